"""Tunable settings for the feedback store and anchor reconciliation.

Settings are frozen pydantic models with defaults. Lock settings can be
overridden from the environment so that slow or shared filesystems can be
accommodated without code changes:

- FEEDBACK_LOCK_TIMEOUT: seconds to wait for the store lock
- FEEDBACK_LOCK_RETRY_INTERVAL: seconds between lock attempts
- FEEDBACK_LOCK_STALE_AFTER: age in seconds after which a lock is abandoned
"""

import os

from pydantic import BaseModel, Field

FEEDBACK_DIR = ".feedback"
STORE_FILENAME = "store.json"
ARCHIVE_FILENAME = "archive.json"
LOCK_SUFFIX = ".lock"

STORE_VERSION = 1
ARCHIVE_VERSION = 1


class LockSettings(BaseModel, frozen=True):
    """Timing parameters for the store lock file."""

    timeout: float = Field(default=5.0, gt=0, description="Seconds to wait before giving up")
    retry_interval: float = Field(default=0.025, gt=0, description="Seconds between attempts")
    stale_after: float = Field(
        default=30.0, gt=0, description="Lock age in seconds treated as abandoned"
    )

    @classmethod
    def from_env(cls) -> "LockSettings":
        """Build settings from FEEDBACK_LOCK_* environment variables.

        Raises:
            ValueError: If a variable is set but is not a positive number
        """
        overrides: dict[str, float] = {}
        for field_name, env_name in (
            ("timeout", "FEEDBACK_LOCK_TIMEOUT"),
            ("retry_interval", "FEEDBACK_LOCK_RETRY_INTERVAL"),
            ("stale_after", "FEEDBACK_LOCK_STALE_AFTER"),
        ):
            raw = os.getenv(env_name)
            if raw is None or raw.strip() == "":
                continue
            try:
                overrides[field_name] = float(raw)
            except ValueError as e:
                raise ValueError(f"{env_name} must be a number of seconds, got {raw!r}") from e
        return cls(**overrides)


class ReconcileSettings(BaseModel, frozen=True):
    """Weights and thresholds for fuzzy anchor relocation.

    The defaults are empirically chosen and have no derivation beyond
    observed behaviour on real edits. Tests pin them as characterization
    values; change them together with those tests.
    """

    default_context_window: int = Field(default=2, ge=0)

    threshold_with_context: float = Field(default=0.55, ge=0.0, le=1.0)
    threshold_without_context: float = Field(default=0.72, ge=0.0, le=1.0)
    ambiguity_delta: float = Field(default=0.03, ge=0.0, le=1.0)

    # Combined score when stored context is available
    context_weight: float = 0.65
    target_weight: float = 0.25
    proximity_weight: float = 0.10

    # Combined score when no context was stored
    no_context_target_weight: float = 0.85
    no_context_proximity_weight: float = 0.15

    proximity_span: int = Field(default=200, gt=0, description="Lines until proximity reaches 0")

    # Target text similarity
    jaccard_weight: float = 0.7
    length_weight: float = 0.3
