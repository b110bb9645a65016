from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from enum import Enum
from pathlib import Path
from typing import Any

from typing_extensions import Self

from pyenvsync.helper.file_utils import atomic_write_text
from pyenvsync.helper.toml_utils import dump_toml_to_str, load_toml_text


def _normalize(value: Any) -> Any:
    """
    Normalizes Python objects into a canonical, JSON-friendly form.

    Paths become POSIX strings, enums their values, mappings are key-sorted,
    sets become sorted lists and tuples become lists. Nested structures are
    processed recursively so that two equal models always normalize to the
    same structure regardless of insertion order.

    Args:
        value (Any): The value to normalize.

    Returns:
        Any: The normalized value.
    """
    match value:
        case Path():
            return value.as_posix()

        case Enum():
            return value.value

        case Mapping():
            return {
                str(k): _normalize(v)
                for k, v in sorted(value.items(), key=lambda kv: str(kv[0]))
            }

        case set() | frozenset():
            return sorted(_normalize(v) for v in value)

        case list() | tuple():
            return [_normalize(v) for v in value]

        case _:
            return value


class MultiformatModelMixin:
    """
    A mixin that gives a model JSON, TOML, and YAML (de)serialization.

    Subclasses implement `to_mapping` and `from_mapping`; everything else is
    derived from those two methods. The mixin also provides a stable content
    hash of the normalized mapping, which is how pyenvsync fingerprints the
    inputs of a resolution.
    """

    # ---- serialization contract ----

    def to_mapping(self, *args, **kwargs) -> Mapping[str, Any]:
        raise NotImplementedError(
            f"{self.__class__.__name__} must implement to_mapping() "
            "to use MultiformatModelMixin serialization.")

    @classmethod
    def from_mapping(cls: type[Self], mapping: Mapping[str, Any], **_: Any) -> Self:
        raise NotImplementedError(
            f"{cls.__name__} must implement from_mapping(mapping, **kwargs) "
            "to use MultiformatModelMixin deserialization.")

    # ---- hashing ----

    def mapping_hash(self) -> str:
        """
        Computes a SHA-256 digest over the normalized mapping of this model.

        The mapping is normalized, dumped as compact JSON with sorted keys,
        and hashed. Two models with equal content always produce the same
        digest. The digest is for change detection only, never for security.

        Returns:
            str: The hexadecimal SHA-256 digest.
        """
        normalized = _normalize(self.to_mapping())
        payload = (
            json.dumps(
                normalized,
                sort_keys=True,
                separators=(",", ":"))
            .encode("utf-8"))
        return hashlib.sha256(payload).hexdigest()

    # ---- output ----

    def to_json(self, *, indent=2) -> str:
        return json.dumps(_normalize(self.to_mapping()), ensure_ascii=False, indent=indent, sort_keys=True)

    def to_yaml(self, *, indent=2) -> str:
        """
        Serializes the model to YAML.

        Raises:
            RuntimeError: If PyYAML is not installed.
        """
        try:
            import yaml
        except ImportError:
            raise RuntimeError("PyYAML not installed")
        return yaml.safe_dump(_normalize(self.to_mapping()), sort_keys=True, allow_unicode=True, indent=indent)

    def to_toml(self, *, indent=2) -> str:
        """
        Serializes the model to TOML with recursively sorted tables.

        `None` values are dropped because TOML cannot express them.
        """

        def sort_dict(obj):
            match obj:
                case dict():
                    return {k: sort_dict(obj[k]) for k in sorted(obj) if obj[k] is not None}
                case list():
                    return [sort_dict(item) for item in obj]
                case _:
                    return obj

        sorted_mapping = sort_dict(_normalize(self.to_mapping()))
        return dump_toml_to_str(sorted_mapping, indent)

    def serialize(self, *, fmt='json', indent=2) -> str:
        match fmt:
            case 'json':
                return self.to_json(indent=indent)
            case 'yaml':
                return self.to_yaml(indent=indent)
            case 'toml':
                return self.to_toml(indent=indent)
            case _:
                raise ValueError(f"unrecognized format: {fmt}")

    def to_file(self, path: str | Path, *, fmt: str | None = None, indent=2) -> Path:
        """
        Writes the serialized model to `path` with write-temp-then-rename.

        Args:
            path (str | Path): Destination file.
            fmt (str | None): Output format; inferred from the suffix if None.
            indent (int): Indentation for JSON and YAML output.

        Returns:
            Path: The path that was written.
        """
        p = Path(path)
        fmt = fmt or _infer_format_from_suffix(p)
        atomic_write_text(p, self.serialize(fmt=fmt, indent=indent))
        return p

    # ---- input ----

    @classmethod
    def deserialize(cls: type[Self], text: str, *, fmt: str = "json", **context: Any) -> Self:
        """
        Parses `text` in the given format and builds an instance from it.

        Args:
            text (str): Serialized content.
            fmt (str): One of "json", "toml", "yaml".
            **context (Any): Passed through to `from_mapping`.

        Returns:
            Self: The deserialized instance.

        Raises:
            TypeError: If the document root is not a mapping.
            ValueError: If the format is not recognized.
        """
        raw = _parse_text(text, fmt=fmt)
        if not isinstance(raw, Mapping):
            raise TypeError(f"{cls.__name__} expected top-level mapping, got {type(raw)!r}")
        return cls.from_mapping(raw, **context)

    @classmethod
    def from_file(cls: type[Self], path: str | Path, fmt: str | None = None, **context: Any) -> Self:
        p = Path(path)
        fmt = fmt or _infer_format_from_suffix(p)
        return cls.deserialize(p.read_text(encoding="utf-8"), fmt=fmt, **context)


def _infer_format_from_suffix(path: Path) -> str:
    suffix = path.suffix.lower()
    match suffix:
        case ".json":
            return "json"
        case ".yaml" | ".yml":
            return "yaml"
        case ".toml" | ".lock":
            return "toml"
        case _:
            raise ValueError(f"Cannot infer format from extension {suffix!r}")


def _parse_text(text: str, *, fmt: str) -> Any:
    fmt = fmt.lower()
    match fmt:
        case "json":
            return json.loads(text or "{}")
        case "yaml":
            try:
                import yaml
            except ImportError:
                raise RuntimeError("PyYAML not installed")
            return next(iter(yaml.safe_load_all(text)), None) or {}
        case "toml":
            return load_toml_text(text or "")
        case _:
            raise ValueError(f"unrecognized format: {fmt!r}")
