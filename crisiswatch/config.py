"""
Scoring Policy & Lexicon Configuration for CrisisWatch.

All numeric constants used by the signal layers, the risk aggregator, and
the escalation dispatcher live in a validated ``ScoringPolicy``.  The
phrase tables the signal layers match against live in a versioned
``Lexicon``.  Both ship with built-in defaults and can be replaced at
startup from YAML so that thresholds and vocabularies can be tuned (or
the lexical layers swapped for another strategy) without touching the
aggregator or the dispatcher.

**Provenance of the defaults:**

The severity thresholds (31/71), the hysteresis margin (10), and the
per-layer caps come from the observed behaviour of an earlier deployment.
No product rationale for their exact values was available, so they are
treated as tunable policy rather than fixed law.

DISCLAIMER: These settings configure a routing heuristic.  They do not
define clinical criteria.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ---------------------------------------------------------------------------
# Scoring policy
# ---------------------------------------------------------------------------

class ScoringPolicy(BaseModel):
    """Numeric knobs for every scoring layer and the escalation rule."""

    # Keyword layer
    high_tier_score: int = Field(default=75, ge=0, le=100)
    medium_tier_score: int = Field(default=45, ge=0, le=100)
    low_tier_score: int = Field(default=15, ge=0, le=100)
    intensifier_bonus: int = Field(default=5, ge=0)
    keyword_cap: int = Field(
        default=60,
        ge=0,
        le=100,
        description=(
            "Upper bound on tier score plus intensifier bonuses.  A matched "
            "tier is never pulled below its own weight by this cap."
        ),
    )

    # Sentiment layer
    sentiment_multiplier: float = Field(default=0.3, ge=0)
    sentiment_cap: int = Field(default=30, ge=0, le=100)

    # Context layer
    history_window: int = Field(default=10, ge=1)
    cadence_window: int = Field(default=5, ge=2)
    cadence_min_messages: int = Field(default=3, ge=2)
    rapid_cadence_seconds: float = Field(default=30.0, gt=0)
    rapid_cadence_bonus: int = Field(default=10, ge=0)
    persistence_min_messages: int = Field(default=3, ge=1)
    persistence_bonus: int = Field(default=15, ge=0)
    isolation_bonus: int = Field(default=8, ge=0)
    context_cap: int = Field(default=30, ge=0, le=100)

    # Trajectory layer
    trajectory_window: int = Field(default=5, ge=2)
    deteriorating_min_points: int = Field(default=3, ge=2)
    deteriorating_bonus: int = Field(default=15, ge=0)
    spike_delta: int = Field(default=20, ge=0)
    spike_bonus: int = Field(default=10, ge=0)
    trajectory_cap: int = Field(default=20, ge=0, le=100)

    # Severity mapping and escalation
    medium_min_score: int = Field(default=31, ge=1, le=100)
    high_min_score: int = Field(default=71, ge=1, le=100)
    flag_threshold: int = Field(
        default=30,
        ge=0,
        le=100,
        description="A score must exceed this value before a session is flagged.",
    )
    hysteresis_delta: int = Field(
        default=10,
        ge=0,
        description=(
            "On an already-flagged session, the new score must exceed the "
            "stored score by more than this margin to re-escalate."
        ),
    )
    clinical_review_min_score: int = Field(
        default=70,
        ge=0,
        le=100,
        description="Handoffs at or above this score auto-request a post-crisis review.",
    )

    @field_validator("high_min_score")
    @classmethod
    def high_above_medium(cls, v: int, info) -> int:
        medium = info.data.get("medium_min_score")
        if medium is not None and v <= medium:
            raise ValueError(
                f"high_min_score ({v}) must be > medium_min_score ({medium})"
            )
        return v

    @field_validator("cadence_min_messages")
    @classmethod
    def cadence_min_within_window(cls, v: int, info) -> int:
        window = info.data.get("cadence_window")
        if window is not None and v > window:
            raise ValueError(
                f"cadence_min_messages ({v}) must be <= cadence_window ({window})"
            )
        return v


# ---------------------------------------------------------------------------
# Lexicon
# ---------------------------------------------------------------------------

_TIER_NAMES = ("high", "medium", "low")


class SentimentCategory(BaseModel):
    """A group of sentiment terms sharing one signed weight."""

    name: str = Field(..., min_length=1)
    weight: int = Field(..., ge=-100, le=100)
    terms: list[str] = Field(default_factory=list)


class Lexicon(BaseModel):
    """Versioned phrase tables used by the lexical signal layers."""

    version: str = Field(..., min_length=1)
    keyword_tiers: dict[str, list[str]] = Field(
        default_factory=dict,
        description="Crisis phrases keyed by tier name: 'high', 'medium', 'low'.",
    )
    intensifiers: dict[str, list[str]] = Field(
        default_factory=dict,
        description="Emotional intensifier phrases keyed by category.",
    )
    sentiment: list[SentimentCategory] = Field(default_factory=list)
    isolation_phrases: list[str] = Field(default_factory=list)

    @field_validator("keyword_tiers")
    @classmethod
    def known_tiers_only(cls, v: dict[str, list[str]]) -> dict[str, list[str]]:
        unknown = set(v) - set(_TIER_NAMES)
        if unknown:
            raise ValueError(
                f"keyword_tiers has unknown tiers {sorted(unknown)}; "
                f"allowed: {list(_TIER_NAMES)}"
            )
        return v


DEFAULT_LEXICON = Lexicon(
    version="2024.1",
    keyword_tiers={
        "high": [
            # Suicidal ideation
            "suicide", "kill myself", "end my life", "want to die",
            "better off dead", "not worth living", "take my own life", "suicidal",
            # Self-harm
            "self-harm", "self harm", "cut myself", "hurt myself", "cutting",
            "burning myself",
            # Substance crisis
            "overdose", "pills to die", "drunk and driving",
            # Violence
            "shoot myself", "shooting myself", "gun to my head", "kill someone",
            "hurt others",
            # Ongoing abuse
            "being abused", "abusing me", "rape", "sexual assault",
            "domestic violence",
        ],
        "medium": [
            "severe depression", "hopeless", "worthless", "no point living",
            "can't go on", "nothing matters", "give up", "no reason to live",
            "life is meaningless",
            "severe anxiety", "panic attack", "can't breathe", "losing control",
            "going crazy",
            "addiction", "substance abuse", "drinking too much", "drug problem",
            "can't stop using",
            "self-destructive", "reckless behavior", "don't care anymore",
            "want to disappear",
        ],
        "low": [
            "stressed", "overwhelmed", "burned out", "exhausted", "can't cope",
            "anxious", "worried", "nervous", "can't sleep", "insomnia",
            "relationship problems", "family issues", "breakup", "lonely",
            "isolated",
        ],
    },
    intensifiers={
        "hopelessness": ["nothing helps", "tried everything", "no way out", "pointless"],
        "detachment": ["don't feel anything", "numb", "disconnected", "floating", "empty"],
        "urgency": ["right now", "tonight", "can't wait", "immediately", "today"],
        "finality": ["goodbye", "last time", "final decision", "done", "it's over"],
    },
    sentiment=[
        SentimentCategory(
            name="very_negative",
            weight=-10,
            terms=["terrible", "awful", "horrible", "miserable", "devastating",
                   "unbearable", "agonizing"],
        ),
        SentimentCategory(
            name="negative",
            weight=-5,
            terms=["bad", "sad", "difficult", "hard", "painful", "struggling",
                   "suffering"],
        ),
        SentimentCategory(
            name="positive",
            weight=5,
            terms=["good", "better", "improving", "hopeful", "optimistic"],
        ),
        SentimentCategory(
            name="very_positive",
            weight=10,
            terms=["great", "wonderful", "excellent", "fantastic", "amazing"],
        ),
    ],
    isolation_phrases=[
        "alone", "no one cares", "nobody understands", "by myself", "isolated",
    ],
)
"""Built-in English lexicon."""


DEFAULT_POLICY = ScoringPolicy()


# ---------------------------------------------------------------------------
# Process settings
# ---------------------------------------------------------------------------

class CrisisWatchSettings(BaseSettings):
    """Process-level settings read from ``CRISISWATCH_*`` environment variables."""

    model_config = SettingsConfigDict(env_prefix="CRISISWATCH_")

    database_url: str = "sqlite:///./crisiswatch.db"
    echo_sql: bool = False
    lexicon_path: Optional[Path] = None
    policy_path: Optional[Path] = None

    def load_lexicon(self) -> Lexicon:
        if self.lexicon_path is None:
            return DEFAULT_LEXICON
        return load_lexicon_from_yaml(self.lexicon_path)

    def load_policy(self) -> ScoringPolicy:
        if self.policy_path is None:
            return DEFAULT_POLICY
        return load_policy_from_yaml(self.policy_path)


# ---------------------------------------------------------------------------
# YAML loaders
# ---------------------------------------------------------------------------

def _read_yaml_mapping(path: str | Path, top_key: str) -> dict:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or top_key not in raw:
        raise ValueError(
            f"YAML file must contain a top-level '{top_key}' mapping."
        )
    section = raw[top_key]
    if not isinstance(section, dict):
        raise ValueError(f"'{top_key}' must be a mapping.")
    return section


def load_lexicon_from_yaml(path: str | Path) -> Lexicon:
    """Load a lexicon from a YAML file.

    Example YAML structure::

        lexicon:
          version: "2024.2-campus"
          keyword_tiers:
            high: ["suicide", "kill myself"]
          intensifiers:
            urgency: ["tonight"]
          sentiment:
            - name: negative
              weight: -5
              terms: ["sad"]
          isolation_phrases: ["alone"]

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML structure is invalid.
        pydantic.ValidationError: If the lexicon fails validation.
    """
    return Lexicon(**_read_yaml_mapping(path, "lexicon"))


def load_policy_from_yaml(path: str | Path) -> ScoringPolicy:
    """Load a scoring policy from a YAML file with a top-level ``scoring`` key.

    Unspecified fields keep their defaults.
    """
    return ScoringPolicy(**_read_yaml_mapping(path, "scoring"))
