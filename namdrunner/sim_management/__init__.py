"""
namdrunner.sim_management
=========================

-------------------------------------------------------------------------------------------
The `namdrunner.sim_management` package is the job engine: it manages the session with
the cluster and drives simulation jobs through their lifecycle of creation, submission,
status syncing, completion and deletion.

-------------------------------------------------------------------------------------------
Modules
=======

[`session`][namdrunner.sim_management.session]:
    The authenticated SSH session over which all remote commands and file transfers are
    made, with timeouts and retries on transient failures.

[`transfer`][namdrunner.sim_management.transfer]:
    Chunked, resumable-per-chunk file uploads and downloads, and remote directory
    operations.

[`slurm`][namdrunner.sim_management.slurm]:
    SLURM commands and parsing of their output, and batched status polling.

[`scripts`][namdrunner.sim_management.scripts]:
    Generation of the batch submission script and the NAMD configuration file.

[`chains`][namdrunner.sim_management.chains]:
    The automation chains that create, submit, sync, complete and delete jobs.

[`manager`][namdrunner.sim_management.manager]:
    Runs chains on background threads and periodically syncs active jobs.

[`jobs`][namdrunner.sim_management.jobs]:
    Job identifiers, statuses, specifications and records.

[`cache`][namdrunner.sim_management.cache]:
    The local SQLite store of job records.

[`cluster`][namdrunner.sim_management.cluster]:
    Cluster profiles and validation of resource requests.

[`errors`][namdrunner.sim_management.errors]:
    The error hierarchy and classification of remote failures.

-------------------------------------------------------------------------------------------
"""
