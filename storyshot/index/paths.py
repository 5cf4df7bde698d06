"""Deterministic artifact paths derived from the composite key.

Locating a baseline, actual or diff image never needs the index log: the
relative path is a pure function of ``(story_id, browser, viewport_name)``.

Sanitization rules, applied to every path segment:

* characters ``< > : " | ? * \\ /`` become ``-``
* whitespace runs become ``-``
* ``..`` becomes ``-``
* leading/trailing dots, dashes and spaces are stripped
* repeated dashes collapse into one

The directory is the part of the story id before ``--`` split on ``-``, so
``screens-basket-attended--empty`` lives under ``screens/basket/attended/``.

Sanitizing is lossy: ``"a:b"`` and ``"a b"`` both become ``a-b``. Use
:func:`artifact_collisions` to find keys that would share an image file.
"""

from __future__ import annotations

import re
import uuid
from posixpath import join as posix_join
from typing import Iterable

from storyshot.models.task import CompositeKey

_UNSAFE = re.compile(r'[<>:"|?*\\/]')
_SPACES = re.compile(r"\s+")
_EDGES = re.compile(r"^[\s.-]+|[\s.-]+$")
_DASHES = re.compile(r"-+")

_SNAPSHOT_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "storyshot:snapshots")


def sanitize_segment(segment: str) -> str:
    segment = _UNSAFE.sub("-", segment)
    segment = _SPACES.sub("-", segment)
    segment = segment.replace("..", "-")
    segment = _EDGES.sub("", segment)
    return _DASHES.sub("-", segment).strip()


def story_directory(story_id: str) -> str:
    """``"screens-basket--empty"`` -> ``"screens/basket"``."""
    path_part = story_id.split("--")[0]
    segments = [sanitize_segment(s) for s in path_part.split("-") if s]
    segments = [s for s in segments if s]
    return posix_join(*segments) if segments else ""


def key_string(key: CompositeKey) -> str:
    story_id, browser, viewport_name = key
    return f"{story_id}::browser:{browser}::viewport:{viewport_name}"


def artifact_name(key: CompositeKey) -> str:
    story_id, browser, viewport_name = key
    parts = [sanitize_segment(story_id) or "story", sanitize_segment(browser), sanitize_segment(viewport_name)]
    return "__".join(p for p in parts if p)


def artifact_rel_path(story_id: str, browser: str, viewport_name: str) -> str:
    key = (story_id, browser, viewport_name)
    directory = story_directory(story_id)
    filename = f"{artifact_name(key)}.png"
    return posix_join(directory, filename) if directory else filename


def diff_rel_path(story_id: str, browser: str, viewport_name: str) -> str:
    return artifact_rel_path(story_id, browser, viewport_name)[: -len(".png")] + ".diff.png"


def snapshot_id(key: CompositeKey) -> str:
    """Stable identifier for one logical test."""
    return str(uuid.uuid5(_SNAPSHOT_NAMESPACE, key_string(key)))


def artifact_collisions(keys: Iterable[CompositeKey]) -> list[tuple[CompositeKey, CompositeKey, str]]:
    """Pairs of distinct keys that map to the same artifact path."""
    seen: dict[str, CompositeKey] = {}
    collisions = []
    for key in keys:
        path = artifact_rel_path(*key)
        first = seen.setdefault(path, key)
        if first != key:
            collisions.append((first, key, path))
    return collisions
