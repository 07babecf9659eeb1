"""Shared utilities for insitutype workflows."""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np
import scipy.sparse as sp


def setup_logger(
    log_file: str | Path,
    name: str = "insitutype",
    level: int = logging.INFO,
) -> logging.Logger:
    """Send the run log to ``log_file`` and the console.

    Handlers left by an earlier call are closed first, so repeated runs in one
    process do not write every line twice.
    """
    path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    logger = logging.getLogger(name)
    logger.setLevel(level)
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
    formatter = logging.Formatter("%(asctime)s | %(name)s | %(levelname)s | %(message)s")
    for handler in (logging.FileHandler(path, mode="w", encoding="utf-8"), logging.StreamHandler()):
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger


def resolve_logger(logger: logging.Logger | None) -> logging.Logger:
    if isinstance(logger, logging.Logger):
        return logger
    return logging.getLogger("insitutype")


def row_totals(X) -> np.ndarray:
    """Per-row sums of a dense or sparse matrix as a float vector."""
    if sp.issparse(X):
        return np.asarray(X.sum(axis=1)).ravel().astype(float)
    return np.asarray(X, dtype=float).sum(axis=1)


def dense_rows(X, start: int, stop: int) -> np.ndarray:
    """Rows ``start:stop`` of ``X`` as a dense float array."""
    block = X[start:stop]
    if sp.issparse(block):
        return block.toarray().astype(float, copy=False)
    return np.asarray(block, dtype=float)


def take_rows(X, idx: np.ndarray):
    idx_arr = np.asarray(idx, dtype=np.int64)
    if sp.issparse(X):
        return X.tocsr()[idx_arr]
    return np.asarray(X)[idx_arr]
