"""Manifest parsing and classification.

Turns rendered manifest text into ManifestRecords. A source may hold several
YAML or JSON documents separated by '---', and any document whose kind ends
in 'List' is unwrapped into its items.

Each record is classified once here into a ResourceKind, which the applier
and rollout code match on instead of comparing kind strings.
"""

import base64
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Mapping

import yaml

logger = logging.getLogger(__name__)

CORE_API_VERSION = 'v1'
APIEXTENSIONS_GROUP = 'apiextensions.k8s.io'
APPS_GROUP = 'apps'

_TIMESTAMP_TAG = 'tag:yaml.org,2002:timestamp'

# A line holding only '---', optionally followed by a comment
_DOCUMENT_SEPARATOR = re.compile(r'^---\s*(#.*)?$')


class _ManifestLoader(yaml.SafeLoader):
    """SafeLoader that leaves timestamps as plain strings so documents stay JSON-encodable."""


_ManifestLoader.yaml_implicit_resolvers = {
    first: [(tag, regexp) for tag, regexp in resolvers if tag != _TIMESTAMP_TAG]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


class ManifestParseError(Exception):
    """One or more manifest sources could not be parsed.

    Attributes:
        errors: Mapping of source path to the error it raised
    """

    def __init__(self, errors: Mapping[str, Exception]):
        self.errors = dict(errors)
        details = '; '.join(f"parsing manifest {path!r}: {err}" for path, err in self.errors.items())
        super().__init__(details)


class ResourceKind(Enum):
    """Kinds the bootstrap engine treats specially."""
    NAMESPACE = 'Namespace'
    CUSTOM_RESOURCE_DEFINITION = 'CustomResourceDefinition'
    DAEMON_SET = 'DaemonSet'
    DEPLOYMENT = 'Deployment'
    OTHER = 'Other'

    @classmethod
    def classify(cls, kind: str, api_version: str) -> 'ResourceKind':
        group = split_api_version(api_version)[0]
        if kind == 'Namespace' and api_version == CORE_API_VERSION:
            return cls.NAMESPACE
        if kind == 'CustomResourceDefinition' and group == APIEXTENSIONS_GROUP:
            return cls.CUSTOM_RESOURCE_DEFINITION
        if kind == 'DaemonSet' and group == APPS_GROUP:
            return cls.DAEMON_SET
        if kind == 'Deployment' and group == APPS_GROUP:
            return cls.DEPLOYMENT
        return cls.OTHER


def split_api_version(api_version: str) -> tuple[str, str]:
    """Split 'group/version' into (group, version); the core group is ''."""
    if '/' in api_version:
        group, version = api_version.split('/', 1)
        return group, version
    return '', api_version


@dataclass(frozen=True)
class ManifestRecord:
    """A single resource read from a manifest source.

    Attributes:
        kind: Resource kind (e.g. ConfigMap)
        api_version: Group/version string (e.g. apps/v1)
        namespace: metadata.namespace, '' for cluster-scoped or unset
        name: metadata.name
        raw: JSON encoding of the document, sent as the create body
        source_path: Logical name of the source the document came from
        resource_kind: Classification computed from kind and api_version
    """
    kind: str
    api_version: str
    namespace: str
    name: str
    raw: bytes = field(repr=False)
    source_path: str = ''
    resource_kind: ResourceKind = field(init=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, 'resource_kind', ResourceKind.classify(self.kind, self.api_version))

    @property
    def group(self) -> str:
        return split_api_version(self.api_version)[0]

    @property
    def version(self) -> str:
        return split_api_version(self.api_version)[1]

    @property
    def object(self) -> dict:
        """Decoded document body."""
        return json.loads(self.raw)

    def __str__(self) -> str:
        if not self.namespace:
            return f"{self.source_path} {self.kind} {self.name}"
        return f"{self.source_path} {self.kind} {self.namespace}/{self.name}"


def load_manifests(files: Mapping[str, str]) -> list[ManifestRecord]:
    """Parse a map of source path to manifest text.

    Sources are parsed independently. Records keep the order in which they
    were read; no ordering is imposed across sources.

    Raises:
        ManifestParseError: Naming every source that failed to parse
    """
    records: list[ManifestRecord] = []
    errors: dict[str, Exception] = {}

    for path, content in files.items():
        try:
            records.extend(parse_manifests(content, source_path=path))
        except (yaml.YAMLError, ValueError) as e:
            logger.error(f"Failed parsing manifest {path}: {e}")
            errors[path] = e

    if errors:
        raise ManifestParseError(errors)

    logger.debug(f"Parsed {len(records)} manifests from {len(files)} sources")
    return records


def parse_manifests(content: str, source_path: str = '') -> list[ManifestRecord]:
    """Parse text that may contain one or more documents.

    Empty, whitespace-only, comment-only and null documents are skipped.

    Raises:
        yaml.YAMLError: On a syntax error; parsing stops at that document
        ValueError: If a document is not a mapping or cannot be encoded as JSON
    """
    records: list[ManifestRecord] = []
    for chunk in split_documents(content):
        if _is_blank(chunk):
            continue
        for document in yaml.load_all(chunk, Loader=_ManifestLoader):
            records.extend(_parse_object(document, source_path))
    return records


def split_documents(content: str) -> list[str]:
    """Split text into documents on '---' separator lines."""
    documents: list[str] = []
    current: list[str] = []
    for line in content.splitlines(keepends=True):
        if _DOCUMENT_SEPARATOR.match(line.rstrip('\r\n')):
            documents.append(''.join(current))
            current = []
            continue
        current.append(line)
    documents.append(''.join(current))
    return documents


def _is_blank(chunk: str) -> bool:
    """True if chunk holds nothing but whitespace and comments."""
    for line in chunk.splitlines():
        stripped = line.strip()
        if stripped and not stripped.startswith('#'):
            return False
    return True


def _json_default(value: Any) -> Any:
    """Encode values PyYAML can produce but json cannot."""
    # Kubernetes carries []byte fields as base64 strings
    if isinstance(value, bytes):
        return base64.b64encode(value).decode('ascii')
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')
    if isinstance(value, date):
        return value.isoformat()
    raise ValueError(f"value of type {type(value).__name__} cannot be encoded as JSON")


def _encode(document: dict, kind: str, name: str) -> bytes:
    try:
        return json.dumps(document, default=_json_default, allow_nan=False).encode('utf-8')
    except ValueError as e:
        raise ValueError(f"invalid manifest {kind} {name!r}: {e}") from e


def _parse_object(document: Any, source_path: str) -> list[ManifestRecord]:
    """Turn one decoded document into records, expanding *List kinds."""
    if document is None:
        return []

    if not isinstance(document, dict):
        raise ValueError(f"invalid manifest: expected a mapping, got {type(document).__name__}")

    kind = _string_field(document, 'kind')
    if kind.endswith('List'):
        items = document.get('items') or []
        if not isinstance(items, list):
            raise ValueError(f"invalid manifest list {kind}: 'items' must be a list")
        records: list[ManifestRecord] = []
        for item in items:
            records.extend(_parse_object(item, source_path))
        return records

    metadata = document.get('metadata') or {}
    if not isinstance(metadata, dict):
        raise ValueError(f"invalid manifest {kind}: 'metadata' must be a mapping")

    name = _string_field(metadata, 'name')
    return [ManifestRecord(
        kind=kind,
        api_version=_string_field(document, 'apiVersion'),
        namespace=_string_field(metadata, 'namespace'),
        name=name,
        raw=_encode(document, kind, name),
        source_path=source_path,
    )]


def _string_field(data: dict, key: str) -> str:
    value = data.get(key)
    if value is None:
        return ''
    if not isinstance(value, str):
        raise ValueError(f"invalid manifest: {key!r} must be a string")
    return value
