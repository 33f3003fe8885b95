import datetime
import logging
import os

import numpy as np
from tqdm.auto import tqdm

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def setup_logging(log_file=None, level=logging.INFO, timestamped=False):
    """
    Set up logging to the console and, optionally, to a file.

    Args:
        log_file: Path of the log file. None logs to the console only.
        level: Logging level of the root logger.
        timestamped: If True and log_file is None, log to logs/qgamcal_<timestamp>.log.

    Returns:
        The configured root logger.
    """
    if log_file is None and timestamped:
        timestamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file = f"logs/qgamcal_{timestamp}.log"

    logger = logging.getLogger()
    logger.setLevel(level)

    # Clear any existing handlers
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT)
    if log_file is not None:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode='a')
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


def derive_rng(seed, candidate_index, replicate_index):
    """
    Independent random generator for one (candidate, replicate) pair.

    The stream depends only on the three integers, never on call order, so
    workers can draw without sharing any generator state.
    """
    return np.random.default_rng([int(seed), int(candidate_index), int(replicate_index)])


def progress(iterable, enabled, **kwargs):
    """Wrap ``iterable`` in a tqdm bar when ``enabled``."""
    if not enabled:
        return iterable
    return tqdm(iterable, **kwargs)
