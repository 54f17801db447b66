r"""backend\app\services\io_utils.py

Dataset readers shared by the inventory service."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import pandas as pd

LOGGER = logging.getLogger(__name__)


def dataset_exists(csv_path: str | Path) -> bool:
    """True when either ``<name>.csv`` or its ``.parquet`` sibling is present."""

    path = Path(csv_path)
    return path.exists() or path.with_suffix(".parquet").exists()


def prefer_parquet(
    csv_path: str | Path,
    *,
    columns: Optional[Iterable[str]] = None,
    dtype: Optional[Dict[str, Any]] = None,
) -> pd.DataFrame:
    """Read a movements/products table, preferring the Parquet sibling.

    ``columns`` restricts the columns read from either format; ``dtype`` only
    applies to the CSV reader (Parquet carries its own schema).  Reading
    Parquet requires ``pyarrow``.
    """

    path = Path(csv_path)
    column_list = list(columns) if columns is not None else None
    parquet_path = path.with_suffix(".parquet")

    if parquet_path.exists():
        LOGGER.debug("Reading %s", parquet_path)
        return pd.read_parquet(parquet_path, columns=column_list)

    LOGGER.debug("Reading %s", path)
    return pd.read_csv(path, usecols=column_list, dtype=dtype)
