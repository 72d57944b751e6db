"""YAML configuration loader for ledgerline.

Loads the seed config files from a config/ directory:
  engine.yaml, subcategories.yaml, merchants.yaml
"""

from pathlib import Path

import yaml

DEFAULT_STAGE_THRESHOLDS = {
    "rules": 0.85,
    "historical": 0.80,
    "agent": 0.75,
}

DEFAULT_AGENT_MODEL = "claude-sonnet-4-20250514"


class Config:
    """Loads and provides access to all YAML configuration files."""

    def __init__(self, config_dir: Path | str = "config"):
        self.config_dir = Path(config_dir)
        if not self.config_dir.is_dir():
            raise FileNotFoundError(f"Config directory not found: {self.config_dir}")

        self._engine: dict | None = None
        self._subcategories: list[dict] | None = None
        self._merchants: list[dict] | None = None

    def _load(self, filename: str) -> dict | list:
        path = self.config_dir / filename
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {path}: {e}") from e
        if data is None:
            raise ValueError(f"Empty config file: {path}")
        return data

    @property
    def engine(self) -> dict:
        if self._engine is None:
            self._engine = self._load("engine.yaml")
        return self._engine

    @property
    def subcategories(self) -> list[dict]:
        """Subcategories available for classification: [{id, name}, ...]."""
        if self._subcategories is None:
            data = self._load("subcategories.yaml")
            if isinstance(data, dict):
                data = data.get("subcategories", [])
            self._subcategories = [s for s in data if s.get("id") and s.get("name")]
        return self._subcategories

    @property
    def merchants(self) -> list[dict]:
        """Merchant rules: [{pattern, match, subcategory_id, confidence}, ...]."""
        if self._merchants is None:
            data = self._load("merchants.yaml")
            if isinstance(data, dict):
                data = data.get("merchants", [])
            self._merchants = data
        return self._merchants

    def subcategory_ids(self) -> set[str]:
        return {s["id"] for s in self.subcategories}

    def subcategory_by_id(self, subcategory_id: str) -> dict | None:
        for sub in self.subcategories:
            if sub["id"] == subcategory_id:
                return sub
        return None

    @property
    def stage_thresholds(self) -> dict[str, float]:
        """Acceptance threshold per classification stage name."""
        configured = self.engine.get("classification", {}).get("stage_thresholds", {})
        thresholds = dict(DEFAULT_STAGE_THRESHOLDS)
        thresholds.update({k: float(v) for k, v in configured.items()})
        return thresholds

    @property
    def rule_conflict_delta(self) -> float:
        """Score gap below which two keyword candidates count as a conflict."""
        return float(
            self.engine.get("classification", {}).get("rule_conflict_delta", 0.05)
        )

    @property
    def recurring_defaults(self) -> dict:
        """Defaults applied to new recurring items (weights, windows, threshold)."""
        return dict(self.engine.get("recurring", {}).get("defaults", {}))

    @property
    def agent_enabled(self) -> bool:
        return bool(self.engine.get("agent", {}).get("enabled", False))

    @property
    def agent_model(self) -> str:
        return self.engine.get("agent", {}).get("model", DEFAULT_AGENT_MODEL)

    @property
    def agent_max_tokens(self) -> int:
        return int(self.engine.get("agent", {}).get("max_tokens", 1024))
