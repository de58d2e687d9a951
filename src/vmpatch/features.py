"""Feature gates for optional patches.

A gate is read from two places: an environment-style key (set by CI
workflows) and a temporary flag file (left behind by interactive install
scripts, which cannot export variables into the package manager's build
sandbox). Only the literal value ``"true"`` enables a gate.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping

LOGGER = logging.getLogger(__name__)

ENABLED_VALUE = "true"


@dataclass(slots=True, frozen=True)
class FeatureGate:
    """Where the value of a named feature flag is read from."""

    name: str
    env_key: str
    flag_file: Path | None = None


def _read_flag_file(path: Path | None) -> str | None:
    if path is None:
        return None
    try:
        return path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    except OSError as error:
        LOGGER.warning("Unable to read feature flag file %s: %s", path, error)
        return None


def merge_feature_gate(env_value: str | None, file_value: str | None) -> bool:
    """Combine the environment value and the flag-file value of one gate.

    The environment value takes precedence whenever it is present, including
    an explicit non-``"true"`` value that disables the gate. The flag file is
    only consulted when the environment key is unset.
    """

    if env_value is not None:
        return env_value == ENABLED_VALUE
    if file_value is not None:
        return file_value == ENABLED_VALUE
    return False


def resolve_feature_flags(
    gates: Iterable[FeatureGate],
    *,
    env: Mapping[str, str] | None = None,
) -> frozenset[str]:
    """Return the names of the gates that are enabled."""

    env_mapping = os.environ if env is None else env
    enabled: set[str] = set()
    for gate in gates:
        env_value = env_mapping.get(gate.env_key)
        file_value = _read_flag_file(gate.flag_file)
        if merge_feature_gate(env_value, file_value):
            enabled.add(gate.name)
            LOGGER.info("Feature gate %s enabled", gate.name)
        else:
            LOGGER.info(
                "Feature gate %s disabled (set %s=%s to enable)",
                gate.name,
                gate.env_key,
                ENABLED_VALUE,
            )
    return frozenset(enabled)


__all__ = ["ENABLED_VALUE", "FeatureGate", "merge_feature_gate", "resolve_feature_flags"]
