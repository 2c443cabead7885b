"""
Prompt profiles for agent sessions.

A profile is a YAML (or JSON) file in `profiles/` with the session prompt
settings:

    name: reception
    prompt_base: "..."
    user_instr: ""
    locale: it-IT
    barge_in: true

PyYAML's safe_load parses both YAML and pure JSON, so one code path serves both.
"""

import os
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .models import PromptConfig


def _get_profiles_dir() -> Path:
    return Path(__file__).parent / "profiles"


def _load_file(path: Path) -> Dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Profile file {path} must contain a mapping at top-level")
        return data


def load_profile(profile_name: str, profiles_dir: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load a profile mapping.

    Resolution order:
    1) <name>.yaml, <name>.yml, <name>.json
    2) default.yaml / default.yml / default.json
    3) hardcoded default
    """
    profiles_dir = profiles_dir or _get_profiles_dir()

    for name in (profile_name, "default"):
        for suffix in (".yaml", ".yml", ".json"):
            candidate = profiles_dir / f"{name}{suffix}"
            if candidate.exists():
                return _load_file(candidate)

    defaults = PromptConfig()
    return {
        "name": "default",
        "prompt_base": defaults.prompt_base,
        "user_instr": defaults.user_instr,
        "locale": defaults.locale,
        "barge_in": defaults.barge_in,
    }


def get_prompt_config(
    profile: Optional[str] = None,
    *,
    user_instr: Optional[str] = None,
    locale: Optional[str] = None,
    barge_in: Optional[bool] = None,
    profiles_dir: Optional[Path] = None,
) -> PromptConfig:
    """
    Build the PromptConfig for a session.

    Profile priority: argument, VOICENET_PROMPT_PROFILE, "default".
    Keyword overrides win over the profile's values.
    """
    name = profile or os.getenv("VOICENET_PROMPT_PROFILE", "default")
    data = load_profile(name, profiles_dir)
    defaults = PromptConfig()

    config = PromptConfig(
        prompt_base=str(data.get("prompt_base") or defaults.prompt_base).strip(),
        user_instr=str(data.get("user_instr") or "").strip(),
        locale=str(data.get("locale") or defaults.locale),
        barge_in=bool(data.get("barge_in", defaults.barge_in)),
    )

    overrides: Dict[str, Any] = {}
    if user_instr is not None:
        overrides["user_instr"] = user_instr
    if locale is not None:
        overrides["locale"] = locale
    if barge_in is not None:
        overrides["barge_in"] = barge_in
    return replace(config, **overrides) if overrides else config
