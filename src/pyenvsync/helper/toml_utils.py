from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

import tomli
import tomli_w


def load_toml_file(path: str | Path) -> dict[str, Any]:
    """
    Loads and parses a TOML file into a dictionary.

    Args:
        path (str | Path): The TOML file to read.

    Returns:
        dict[str, Any]: The parsed document.

    Raises:
        FileNotFoundError: If the file does not exist.
        tomli.TOMLDecodeError: If the content is not valid TOML.
    """
    with open(path, "rb") as f:
        return tomli.load(f)


def load_toml_text(text: str) -> dict[str, Any]:
    return tomli.loads(text)


def load_toml_bytes(data: bytes) -> dict[str, Any]:
    """
    Parses UTF-8 encoded TOML bytes.

    Raises:
        UnicodeDecodeError: If the bytes are not valid UTF-8.
        tomli.TOMLDecodeError: If the content is not valid TOML.
    """
    return tomli.loads(data.decode("utf-8"))


def dump_toml_to_str(data: Mapping[str, Any], indent: int = 2) -> str:
    """
    Serializes a mapping to a TOML string.

    Key order is preserved as given, which is what makes the lockfile layout
    stable: callers build their mappings in the order they want written.

    Args:
        data (Mapping[str, Any]): The data to serialize.
        indent (int): Indentation used for multi-line arrays.

    Returns:
        str: The TOML document.
    """
    return tomli_w.dumps(data, indent=indent)
