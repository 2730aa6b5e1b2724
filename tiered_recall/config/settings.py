"""Application settings and configuration schema."""

import math
import os
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator

from tiered_recall.errors import InvalidConfig, InvalidWeights


ENV_PREFIX = "TIERED_RECALL_"


class StoreCfg(BaseModel):
    """Turn store configuration."""
    db_path: str = "data/memory/turns.db"
    user_query_cap: int = Field(100, ge=1)


class TierCfg(BaseModel):
    """Hot/Warm bounds."""
    hot_max_turns: int = Field(5, ge=1)
    hot_max_tokens: int = Field(1500, ge=1)
    warm_max_turns: int = Field(50, ge=1)
    warm_max_tokens: int = Field(15000, ge=1)


class RankingCfg(BaseModel):
    """BM25 constants."""
    k1: float = Field(1.2, ge=0.0)
    b: float = Field(0.75, ge=0.0, le=1.0)


class SignificanceCfg(BaseModel):
    """Significance blend weights and recency decay rate."""
    recency: float = 0.5
    relevance: float = 0.35
    criticality: float = 0.15
    decay: float = Field(0.1, ge=0.0)

    @model_validator(mode="after")
    def _check_weights(self) -> "SignificanceCfg":
        weights = (self.recency, self.relevance, self.criticality)
        if any(w < 0 for w in weights):
            raise InvalidWeights(f"Significance weights must be non-negative: {weights}")
        if not math.isclose(sum(weights), 1.0, abs_tol=1e-6):
            raise InvalidWeights(f"Significance weights must sum to 1.0, got {sum(weights):.6f}")
        return self


class RecognitionCfg(BaseModel):
    """Recognition pass behaviour."""
    enabled: bool = True
    timeout_s: float = Field(5.0, gt=0.0)
    max_attempts: int = Field(3, ge=1)
    backoff_base_s: float = Field(1.0, ge=0.0)
    max_results_cap: int = Field(20, ge=1)
    default_max_results: int = Field(8, ge=1)
    warm_gap_seconds: float = Field(6 * 3600, ge=0.0)

    @property
    def max_backoff_s(self) -> float:
        return self.backoff_base_s * 2 ** (self.max_attempts - 1)

    @property
    def pass_deadline_s(self) -> float:
        """
        Wall-clock budget for one recognition pass, retries included.

        attempts x max backoff (attempts x timeout when backoff is off).
        Per-call timeouts and backoff sleeps are clipped to what remains.
        """
        return self.max_attempts * (self.max_backoff_s or self.timeout_s)

    @model_validator(mode="after")
    def _check_deadline(self) -> "RecognitionCfg":
        if self.timeout_s > self.pass_deadline_s:
            raise InvalidConfig(
                f"timeout_s={self.timeout_s} exceeds the pass deadline of {self.pass_deadline_s}s"
            )
        return self


class BundleCfg(BaseModel):
    """Token budget for the assembled memory bundle."""
    token_budget: int = Field(4000, ge=1)


class Settings(BaseModel):
    """Main application settings."""
    store: StoreCfg = StoreCfg()
    tiers: TierCfg = TierCfg()
    ranking: RankingCfg = RankingCfg()
    significance: SignificanceCfg = SignificanceCfg()
    recognition: RecognitionCfg = RecognitionCfg()
    bundle: BundleCfg = BundleCfg()

    @classmethod
    def load(cls, data: Optional[Dict[str, Any]] = None) -> "Settings":
        """
        Build settings from a nested dict, failing fast on invalid values.

        Raises:
            InvalidWeights: significance weights are invalid
            InvalidConfig: any other validation failure
        """
        try:
            return cls.model_validate(data or {})
        except InvalidConfig:
            raise
        except ValidationError as e:
            # Pydantic wraps errors raised inside validators
            for err in e.errors():
                ctx_error = (err.get("ctx") or {}).get("error")
                if isinstance(ctx_error, InvalidConfig):
                    raise ctx_error from e
            raise InvalidConfig(str(e)) from e

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Load settings from TIERED_RECALL_<SECTION>__<FIELD> variables.

        Example: TIERED_RECALL_TIERS__HOT_MAX_TURNS=8
        """
        environ = os.environ if environ is None else environ
        data: Dict[str, Dict[str, Any]] = {}

        for key, value in environ.items():
            if not key.startswith(ENV_PREFIX):
                continue
            path = key[len(ENV_PREFIX):].lower()
            if "__" not in path:
                raise InvalidConfig(f"Expected {ENV_PREFIX}<SECTION>__<FIELD>, got {key}")
            section, field_name = path.split("__", 1)
            if section not in cls.model_fields:
                raise InvalidConfig(f"Unknown settings section in {key}")
            data.setdefault(section, {})[field_name] = value

        return cls.load(data)
