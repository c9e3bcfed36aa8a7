"""
namdrunner
==========

The `namdrunner` package runs NAMD molecular dynamics simulations on a remote SLURM
cluster from a local machine. It takes care of connecting to the cluster over SSH,
uploading input files, generating the batch submission script and the simulation
configuration, submitting jobs to the scheduler, tracking their status and gathering
their results once they finish.

Job records are kept in a local cache, so that jobs can be inspected while offline, and
a metadata file is written alongside each job on the cluster, so that the cache can be
rebuilt from the cluster if it is lost.

Key Features
============
- **Guided job creation**: Resource requests are validated against the cluster's
  partition and QoS limits, with cost and queue-time estimates.
- **Resilient remote operations**: Commands and chunked file transfers are retried on
  transient network failures; submission is never retried, to avoid duplicate jobs.
- **Background status syncing**: Active jobs are polled in batches and finished jobs
  have their results and scheduler logs gathered automatically.

Subpackages
===========
- [`sim_management`][namdrunner.sim_management]: The job engine.
- [`app`][namdrunner.app]: The command line application.
- [`utilities`][namdrunner.utilities]: String validation used across the package.
"""
