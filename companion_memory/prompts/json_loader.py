from __future__ import annotations

import copy
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger("companion_memory.prompts")

PROMPTS_DIR_ENV = "COMPANION_PROMPTS_DIR"


@dataclass(slots=True)
class _TemplateEntry:
    mtime_ns: int | None
    table: dict[str, Any]


_CACHE: dict[Path, _TemplateEntry] = {}


def template_dir() -> Path:
    """Directory holding ``*.json`` template overrides.

    ``COMPANION_PROMPTS_DIR`` wins over the packaged ``prompts/data`` folder.
    """
    override = os.getenv(PROMPTS_DIR_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return Path(__file__).with_name("data")


def clear_template_cache() -> None:
    _CACHE.clear()


def _overlay(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    # Nested tables merge key by key; any other value replaces the default outright.
    merged = copy.deepcopy(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _overlay(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _read_override(path: Path) -> dict[str, Any] | None:
    try:
        payload = json.loads(path.read_text(encoding="utf-8-sig"))
    except (OSError, ValueError) as exc:
        logger.warning("Ignoring unreadable template override %s: %s", path, exc)
        return None
    if not isinstance(payload, dict):
        logger.warning("Ignoring template override %s: top level must be an object", path)
        return None
    return payload


def load_prompt_json(filename: str, defaults: dict[str, Any]) -> dict[str, Any]:
    """Return ``defaults`` overlaid with ``<template_dir>/<filename>`` when that file exists."""
    path = (template_dir() / filename).resolve()
    try:
        mtime_ns: int | None = path.stat().st_mtime_ns
    except OSError:
        mtime_ns = None

    entry = _CACHE.get(path)
    if entry is None or entry.mtime_ns != mtime_ns:
        table = copy.deepcopy(defaults)
        if mtime_ns is not None:
            override = _read_override(path)
            if override is not None:
                table = _overlay(table, override)
                logger.debug("Loaded template override %s", path)
        entry = _TemplateEntry(mtime_ns=mtime_ns, table=table)
        _CACHE[path] = entry
    return copy.deepcopy(entry.table)
