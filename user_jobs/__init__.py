"""
user_jobs -- Batch jobs over the user table.

The inactive-user job marks users INACTIVE when they have not been
updated for a configurable number of years.  It runs as a partitioned
chunk step (one partition per grade) on ``batch_engine``, with settings
from ``batch_config``.

Architecture:
    user_jobs/ is the outermost package.  Nothing in batch_kernel,
    batch_engine or batch_config imports from it.
"""
