"""
Dask-based execution helpers

Per-file D*+ processing is embarrassingly parallel: each file gives one
HistogramSet and the sets are merged afterwards. This module starts a local
Dask cluster and runs the per-file function as delayed tasks.
"""

import logging

from dask import delayed
from dask.distributed import Client, LocalCluster

logger = logging.getLogger(__name__)


def create_local_client(n_workers=4, threads_per_worker=1, processes=False):
    """
    Create a local Dask client with a LocalCluster.

    Parameters
    ----------
    n_workers : int
        Number of workers to start.
    threads_per_worker : int
        Number of threads per worker.
    processes : bool
        Use worker processes instead of threads.

    Returns
    -------
    dask.distributed.Client
        Connected Dask client.
    """
    cluster = LocalCluster(
        n_workers=n_workers,
        threads_per_worker=threads_per_worker,
        processes=processes,
    )
    return Client(cluster)


def map_files(filenames, process_function, config):
    """
    Wrap a per-file processing function into Dask delayed tasks.

    Parameters
    ----------
    filenames : list of str
        ROOT file paths to process.
    process_function : callable
        process_function(filename, config) returning a per-file result,
        or None for a file that could not be processed.
    config : dict
        Configuration dictionary passed to the processing function.

    Returns
    -------
    list of dask.delayed.Delayed
        One task per file, in input order.
    """
    return [delayed(process_function)(filename, config) for filename in filenames]


def run_files(client, filenames, process_function, config):
    """
    Compute the per-file tasks on `client` and return (filename, result)
    pairs in input order.
    """
    tasks = map_files(filenames, process_function, config)
    logger.info("Submitting %d file task(s) to %s", len(tasks), client)
    futures = client.compute(tasks)
    results = client.gather(futures)
    return list(zip(filenames, results))
