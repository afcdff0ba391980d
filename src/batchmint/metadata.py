"""Where a token's metadata URI comes from.

Providers raise MetadataError for a single token they can't resolve and ConfigError when
the provider itself is unusable.
"""

import json
import logging
import re
from pathlib import Path
from typing import Protocol

from batchmint.errors import ConfigError, MetadataError

log = logging.getLogger("batchmint.metadata")

URI_FIELDS = ("token_uri", "external_url", "image")


class MetadataProvider(Protocol):
    def resolve_uri(self, token_id: int) -> str: ...


class ConstantUri:
    """Every token gets the same URI (placeholder mints)."""

    def __init__(self, uri: str) -> None:
        self.uri = uri

    def resolve_uri(self, token_id: int) -> str:
        return self.uri


class TemplateUri:
    """`template.format(token_id=...)`, e.g. "ipfs://<cid>/{token_id}.json"."""

    def __init__(self, template: str) -> None:
        if "{token_id" not in template:
            raise ConfigError("metadata.template must reference {token_id}")
        self.template = template

    def resolve_uri(self, token_id: int) -> str:
        return self.template.format(token_id=token_id)


class DirectoryUri:
    """Per-token JSON documents generated ahead of time.

    Files are matched to tokens by the first run of digits in the filename, and the URI is
    the first of token_uri / external_url / image present in the document.
    """

    def __init__(self, directory: str | Path, *, pattern: str = "*.json") -> None:
        self.directory = Path(directory)
        self.pattern = pattern
        self._index: dict[int, Path] | None = None

    def _build_index(self) -> dict[int, Path]:
        if not self.directory.is_dir():
            raise ConfigError(f"metadata directory not found: {self.directory}")
        index = {}
        for path in sorted(self.directory.glob(self.pattern)):
            m = re.search(r"\d+", path.stem)
            if m is None:
                log.warning("Skipping %s, no token id in filename", path.name)
                continue
            index[int(m.group())] = path
        log.info("Indexed %s metadata documents in %s", len(index), self.directory)
        return index

    def resolve_uri(self, token_id: int) -> str:
        if self._index is None:
            self._index = self._build_index()
        path = self._index.get(token_id)
        if path is None:
            raise MetadataError(token_id, f"no metadata document in {self.directory}")
        try:
            doc = json.loads(path.read_text())
        except (OSError, ValueError) as e:
            raise MetadataError(token_id, f"{path.name} is unreadable: {e}") from e
        for key in URI_FIELDS:
            if isinstance(doc, dict) and doc.get(key):
                return doc[key]
        raise MetadataError(token_id, f"{path.name} has none of {', '.join(URI_FIELDS)}")


def provider_from_config(section: dict) -> MetadataProvider:
    kind = section.get("kind", "constant")
    try:
        match kind:
            case "constant":
                return ConstantUri(section["uri"])
            case "template":
                return TemplateUri(section["template"])
            case "directory":
                return DirectoryUri(section["directory"], pattern=section.get("pattern", "*.json"))
    except KeyError as e:
        raise ConfigError(f"metadata.{e.args[0]} is required for kind {kind!r}") from e
    raise ConfigError(f"unknown metadata provider {kind!r}")
