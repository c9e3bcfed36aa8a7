import shlex
import unittest
from pathlib import PurePosixPath

from namdrunner.sim_management.shell import (
    Command,
    SafeToken,
    build_command,
    cd_and_run,
    escape_parameter,
)


class TestEscapeParameter(unittest.TestCase):
    def test_round_trips_as_single_word(self):
        """Test that an escaped value is split by a POSIX shell into exactly one word
        equal to the original value."""

        values = [
            "plain",
            "with space",
            "it's",
            "$(rm -rf ~)",
            "`id`",
            "a;b&&c|d",
            "*.pdb",
            "new\nline",
            '"double"',
            "",
        ]
        for value in values:
            with self.subTest(value=value):
                self.assertEqual([value], shlex.split(escape_parameter(value)))

    def test_returns_safe_token(self):
        self.assertIsInstance(escape_parameter("x"), SafeToken)

    def test_accepts_ints_and_paths(self):
        self.assertEqual("42", escape_parameter(42))
        self.assertEqual("/a/b", escape_parameter(PurePosixPath("/a/b")))

    def test_rejects_null_byte(self):
        with self.assertRaises(ValueError):
            escape_parameter("a\0b")

    def test_rejects_other_types(self):
        for value in (None, 1.5, True, b"bytes"):
            with self.subTest(value=value):
                with self.assertRaises(TypeError):
                    escape_parameter(value)


class TestBuildCommand(unittest.TestCase):
    def test_builds_command_from_escaped_parameters(self):
        command = build_command("mkdir -p -- {path}", path=escape_parameter("/a b"))
        self.assertIsInstance(command, Command)
        self.assertEqual(["mkdir", "-p", "--", "/a b"], shlex.split(command))

    def test_rejects_unescaped_parameters(self):
        with self.assertRaises(TypeError):
            build_command("rm {path}", path="/tmp; reboot")

    def test_missing_placeholder_value(self):
        with self.assertRaises(KeyError):
            build_command("scancel {job_id}")

    def test_unused_parameter(self):
        with self.assertRaises(ValueError):
            build_command("squeue", job_id=escape_parameter("1"))

    def test_nested_command(self):
        inner = build_command("sbatch {script}", script=escape_parameter("job.sbatch"))
        command = cd_and_run("/scratch/x y", inner)
        self.assertEqual(
            ["cd", "/scratch/x y", "&&", "sbatch", "job.sbatch"], shlex.split(command)
        )

    def test_then_requires_command(self):
        first = build_command("true")
        self.assertEqual("true && false", first.then(build_command("false")))
        with self.assertRaises(TypeError):
            first.then("false")


if __name__ == "__main__":
    unittest.main()
