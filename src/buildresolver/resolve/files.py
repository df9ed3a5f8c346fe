"""
File helpers for the resolution cache and descriptor store.
"""

import json
import os
import tempfile
from typing import Any, Callable, Optional

from buildresolver.log_utils import logger


def atomic_write(
    file_path: str, writer_func: Callable[[Any], None], suffix: str = ".tmp"
) -> bool:
    """
    Write data to a file atomically by writing to a temporary file and replacing the target on success.

    Parameters:
        file_path (str): Destination file path to be written.
        writer_func (Callable[[Any], None]): Callable that receives an open text file-like object and writes the desired content to it.
        suffix (str): Suffix to use for the temporary file name (default ".tmp").

    Returns:
        bool: `True` if the temporary write and atomic replace succeeded, `False` on any error.
    """
    directory = os.path.dirname(file_path) or "."
    try:
        os.makedirs(directory, exist_ok=True)
        temp_fd, temp_path = tempfile.mkstemp(dir=directory, prefix="tmp-", suffix=suffix)
    except OSError as e:
        logger.error("Could not create temporary file for %s: %s", file_path, e)
        return False

    try:
        with os.fdopen(temp_fd, "w", encoding="utf-8") as temp_f:
            writer_func(temp_f)
        os.replace(temp_path, file_path)
    except (OSError, UnicodeEncodeError, TypeError, ValueError) as e:
        logger.error("Could not write to %s: %s", file_path, e)
        return False
    finally:
        if os.path.exists(temp_path):
            try:
                os.remove(temp_path)
            except OSError:
                pass
    return True


def atomic_write_json(file_path: str, data: Any) -> bool:
    """
    Atomically write `data` to the target file as pretty-printed JSON.

    Returns:
        bool: `True` if the file was written and moved into place successfully, `False` on error.
    """
    return atomic_write(file_path, lambda f: json.dump(data, f, indent=2), suffix=".json")


def read_json(file_path: str) -> Optional[Any]:
    """
    Load and parse JSON from the given file path.

    Returns:
        Parsed JSON value, or `None` if the file is missing or cannot be read/decoded.
    """
    if not os.path.exists(file_path):
        return None

    try:
        with open(file_path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.error("Could not read JSON file %s: %s", file_path, e)
        return None
