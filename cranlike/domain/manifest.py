"""
Parsing of DESCRIPTION-style manifests.

A manifest is an RFC822-like block of "Key: value" lines. Indented lines
continue the previous value. Only the first paragraph is read.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List

from cranlike.domain.errors import ManifestParseError
from cranlike.domain.models import DependencyEdge

logger = logging.getLogger(__name__)

# Manifest fields that list dependencies, in the order they are merged.
DEPENDENCY_ROLES = ("Depends", "Imports", "LinkingTo", "Suggests", "Enhances")

_FIELD_RE = re.compile(r"^([^\s:]+):[ \t]*(.*)$")
_DEPENDENCY_RE = re.compile(r"^([A-Za-z0-9][A-Za-z0-9._]*)\s*(?:\(\s*(.*?)\s*\))?$")
_BUILT_PARTS = ("R", "Platform", "Date", "OStype")


def parse_dcf(text: str) -> Dict[str, str]:
    """
    Parse manifest text into an ordered mapping of field name to value.

    Continuation lines are folded into a single space-separated value.
    """
    fields: Dict[str, str] = {}
    current = None

    for lineno, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            if fields:
                break
            continue

        if line[0] in " \t":
            if current is None:
                raise ManifestParseError(f"Continuation line {lineno} appears before any field")
            fields[current] = f"{fields[current]} {line.strip()}".strip()
            continue

        match = _FIELD_RE.match(line)
        if not match:
            raise ManifestParseError(f"Malformed manifest line {lineno}: {line[:80]!r}")

        key, value = match.group(1), match.group(2).strip()
        if key in fields:
            raise ManifestParseError(f"Duplicate manifest field '{key}' on line {lineno}")
        fields[key] = value
        current = key

    if not fields:
        raise ManifestParseError("Manifest is empty")
    return fields


def strip_dotted_keys(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Drop fields whose name contains a dot; the record store treats dots as paths."""
    for key in [k for k in fields if "." in k]:
        logger.warning(f"Dropping manifest field {key} (dots in names not allowed)")
        del fields[key]
    return fields


def parse_built(value: str) -> Dict[str, str]:
    """
    Expand "R 4.3.1; x86_64-pc-linux-gnu; 2023-10-12 10:11:12 UTC; unix".

    Packages without compiled code have an empty platform part, which is left out.
    """
    parts = [p.strip() for p in value.split(";")]
    if len(parts) != len(_BUILT_PARTS):
        raise ManifestParseError(f"Malformed Built field: {value!r}")

    built: Dict[str, str] = {}
    for name, part in zip(_BUILT_PARTS, parts):
        if name == "R":
            part = re.sub(r"^R\s+", "", part)
        if part:
            built[name] = part
    return built


def parse_packaged(value: str) -> Dict[str, str]:
    date, _, user = value.partition(";")
    packaged = {"Date": date.strip()}
    if user.strip():
        packaged["User"] = user.strip()
    return packaged


def parse_dependency_list(value: str) -> List[Dict[str, Any]]:
    deps: List[Dict[str, Any]] = []
    for entry in value.split(","):
        entry = entry.strip()
        if not entry:
            continue
        match = _DEPENDENCY_RE.match(entry)
        if not match:
            raise ManifestParseError(f"Malformed dependency entry: {entry!r}")
        dep: Dict[str, Any] = {"package": match.group(1)}
        if match.group(2):
            dep["version"] = match.group(2)
        deps.append(dep)
    return deps


def parse_manifest(text: str) -> Dict[str, Any]:
    """
    Parse manifest text into a structured record.

    Built and Packaged become nested objects and dependency fields become
    lists of {package, version}. Dotted field names are removed first.
    """
    fields: Dict[str, Any] = strip_dotted_keys(parse_dcf(text))

    if "Built" in fields:
        fields["Built"] = parse_built(fields["Built"])
    if "Packaged" in fields:
        fields["Packaged"] = parse_packaged(fields["Packaged"])
    for role in DEPENDENCY_ROLES:
        if role in fields:
            fields[role] = parse_dependency_list(fields[role])
    return fields


def merge_dependencies(fields: Dict[str, Any]) -> List[DependencyEdge]:
    """
    Remove the dependency fields from a parsed manifest and return them as
    one ordered list of edges, each tagged with its source field.
    """
    edges: List[DependencyEdge] = []
    for role in DEPENDENCY_ROLES:
        for dep in fields.pop(role, None) or []:
            edges.append(DependencyEdge(package=dep["package"], version=dep.get("version"), role=role))
    return edges
