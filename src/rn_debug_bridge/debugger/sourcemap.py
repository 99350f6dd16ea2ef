"""Helpers for the sourceMappingURL reference inside a bundle and the map it points to."""

from __future__ import annotations

import json
import posixpath
import re
from urllib.parse import urljoin, urlsplit, urlunsplit

# //# sourceMappingURL=/index.bundle.map?platform=ios&dev=true, also after code on the same line
SOURCE_MAP_URL_RE = re.compile(r"//([#@]) sourceMappingURL=((?!data:).+?)[ \t\r]*$", re.MULTILINE)


def _last_reference(script_body: str) -> re.Match[str] | None:
    matches = list(SOURCE_MAP_URL_RE.finditer(script_body))
    return matches[-1] if matches else None


def get_source_map_url(script_url: str, script_body: str) -> str | None:
    """Return the absolute URL of the bundle's sourcemap, served by the same host as the bundle."""
    match = _last_reference(script_body)
    if match is None:
        return None

    script = urlsplit(script_url)
    resolved = urlsplit(urljoin(script_url, match.group(2)))
    return urlunsplit((script.scheme, script.netloc, resolved.path, resolved.query, ""))


def update_script_paths(script_body: str, source_map_url: str) -> str:
    """Point the bundle's sourcemap reference at the map stored next to it."""
    match = _last_reference(script_body)
    if match is None:
        return script_body
    local_name = posixpath.basename(urlsplit(source_map_url).path)
    return (
        script_body[: match.start()]
        + f"//# sourceMappingURL={local_name}"
        + script_body[match.end() :]
    )


def update_source_map_file(source_map_body: str, script_file_name: str) -> str:
    """Rename the generated file inside the map to the local bundle name.

    Bodies that are not a JSON object are returned unchanged.
    """
    try:
        source_map = json.loads(source_map_body)
    except json.JSONDecodeError:
        return source_map_body
    if not isinstance(source_map, dict):
        return source_map_body

    source_map["file"] = script_file_name
    source_map["sourceRoot"] = ""
    return json.dumps(source_map)
