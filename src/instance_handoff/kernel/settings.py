from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Union

import yaml

from ..contracts.v1 import CoordinatorSettings

SETTINGS_SECTION = "instance_handoff"


def settings_from_doc(doc: Any) -> CoordinatorSettings:
    """Validate a settings mapping; a nested `instance_handoff:` section wins."""
    if doc is None:
        return CoordinatorSettings()
    if not isinstance(doc, dict):
        raise ValueError("settings document must be a mapping")
    section = doc.get(SETTINGS_SECTION)
    data: Dict[str, Any] = dict(section) if isinstance(section, dict) else dict(doc)
    return CoordinatorSettings.model_validate(data)


def load_settings(path: Union[str, Path]) -> CoordinatorSettings:
    """Load coordinator settings from a YAML file owned by the host application."""
    text = Path(path).read_text(encoding="utf-8")
    return settings_from_doc(yaml.safe_load(text))
