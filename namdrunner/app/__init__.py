"""The namdrunner command line application: the `App` facade and its ``cmd2`` shell."""
