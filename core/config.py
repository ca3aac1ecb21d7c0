"""
Configuration management for the Tabular Suppression Engine.
Handles loading, validation, and access to configuration parameters.
"""

import configparser
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)


RULES = ("frequency", "dominance", "p-percent", "pq")
METHODS = ("exact", "top-down", "geometric", "simple")
OBJECTIVES = ("count", "value", "frequency", "information-loss")
SUPPRESSION_METHODS = ("marker", "null", "value")


@dataclass
class RuleConfig:
    """Primary suppression rule and its parameters."""

    rule: str = "frequency"

    # Frequency rule: unsafe if frequency <= max_n
    max_n: int = 2
    protection_pct: float = 10.0  # Required attacker range, as % of the cell aggregate

    # Dominance rule: unsafe if the n largest contributions exceed k% of the aggregate
    n: int = 1
    k: float = 75.0

    # p-percent / pq rule
    p: float = 10.0
    q: float = 100.0

    # Cells without any record are safe unless this is set
    empty_cells_unsafe: bool = False

    def validate(self) -> None:
        """Validate rule configuration."""
        if self.rule not in RULES:
            raise ValueError(f"rule must be one of {RULES}, got {self.rule!r}")

        if self.max_n < 0:
            raise ValueError(f"max_n must be >= 0, got {self.max_n}")

        if self.protection_pct < 0:
            raise ValueError(f"protection_pct must be >= 0, got {self.protection_pct}")

        if self.n < 1:
            raise ValueError(f"n must be >= 1, got {self.n}")

        if not 0 < self.k <= 100:
            raise ValueError(f"k must be in (0, 100], got {self.k}")

        if not 0 < self.p <= 100:
            raise ValueError(f"p must be in (0, 100], got {self.p}")

        if self.rule == "pq" and not self.p < self.q <= 100:
            raise ValueError(f"q must be in (p, 100] for the pq rule, got p={self.p}, q={self.q}")

    @property
    def parameters(self) -> Dict[str, Any]:
        """Parameters that apply to the selected rule."""
        if self.rule == "frequency":
            return {"max_n": self.max_n, "protection_pct": self.protection_pct}
        if self.rule == "dominance":
            return {"n": self.n, "k": self.k}
        if self.rule == "p-percent":
            return {"p": self.p}
        return {"p": self.p, "q": self.q}


@dataclass
class SolverConfig:
    """Secondary suppression strategy settings."""

    method: str = "top-down"
    objective: str = "value"
    fallback_method: Optional[str] = None  # Used when the method raises a retryable error

    # Exact (branch-and-cut) limits
    max_exact_cells: int = 5000
    time_limit: float = 60.0  # Seconds per exact solve
    max_cut_rounds: int = 50

    workers: int = 1  # Thread pool size for rule evaluation and subtable solves

    # Attacker model for the range audit
    nonnegative: bool = True
    verify_ranges: bool = True

    def validate(self) -> None:
        """Validate solver configuration."""
        if self.method not in METHODS:
            raise ValueError(f"method must be one of {METHODS}, got {self.method!r}")

        if self.objective not in OBJECTIVES:
            raise ValueError(f"objective must be one of {OBJECTIVES}, got {self.objective!r}")

        if self.fallback_method is not None:
            if self.fallback_method not in METHODS:
                raise ValueError(
                    f"fallback_method must be one of {METHODS} or empty, got {self.fallback_method!r}"
                )
            if self.fallback_method == self.method:
                raise ValueError(f"fallback_method must differ from method ({self.method!r})")

        if self.max_exact_cells < 1:
            raise ValueError(f"max_exact_cells must be >= 1, got {self.max_exact_cells}")

        if self.time_limit <= 0:
            raise ValueError(f"time_limit must be > 0, got {self.time_limit}")

        if self.max_cut_rounds < 1:
            raise ValueError(f"max_cut_rounds must be >= 1, got {self.max_cut_rounds}")

        if self.workers < 1:
            raise ValueError(f"workers must be >= 1, got {self.workers}")


@dataclass
class OutputConfig:
    """Export settings."""
    suppression_method: str = "marker"  # 'marker', 'null', or 'value'
    suppression_marker: str = "x"
    suppression_sentinel: float = -1
    include_totals: bool = True

    def validate(self) -> None:
        """Validate output configuration."""
        if self.suppression_method not in SUPPRESSION_METHODS:
            raise ValueError(
                f"suppression_method must be one of {SUPPRESSION_METHODS}, "
                f"got {self.suppression_method!r}"
            )


@dataclass
class Config:
    """Main configuration container."""
    rule: RuleConfig = field(default_factory=RuleConfig)
    solver: SolverConfig = field(default_factory=SolverConfig)
    output: OutputConfig = field(default_factory=OutputConfig)

    def validate(self) -> None:
        """Validate entire configuration."""
        self.rule.validate()
        self.solver.validate()
        self.output.validate()
        logger.info("Configuration validated successfully")

    @classmethod
    def from_dict(cls, settings: Dict[str, Any]) -> "Config":
        """
        Build a configuration from a suppression request.

        Expected format:
        {"rule": "p-percent", "parameters": {"p": 15},
         "method": "geometric", "objective": "count"}

        Unknown parameter names fail fast.
        """
        solver_keys = ("method", "objective", "fallback_method", "max_exact_cells",
                       "time_limit", "max_cut_rounds", "workers", "nonnegative", "verify_ranges")
        unknown = set(settings) - {"rule", "parameters", *solver_keys}
        if unknown:
            raise ValueError(f"Unknown configuration keys: {sorted(unknown)}")

        config = cls()
        if "rule" in settings:
            config.rule.rule = settings["rule"]
        for key, value in (settings.get("parameters") or {}).items():
            if key not in RuleConfig.__dataclass_fields__ or key == "rule":
                raise ValueError(f"Unknown rule parameter {key!r}")
            setattr(config.rule, key, value)

        for key in solver_keys:
            if key in settings:
                setattr(config.solver, key, settings[key])

        config.validate()
        return config

    @classmethod
    def from_ini(cls, config_path: str) -> "Config":
        """Load configuration from INI file."""
        if not os.path.exists(config_path):
            raise FileNotFoundError(f"Config file not found: {config_path}")

        parser = configparser.ConfigParser()
        parser.read(config_path, encoding='utf-8')

        config = cls()

        # Load rule section
        if 'rule' in parser:
            sec = parser['rule']
            config.rule.rule = sec.get('rule', config.rule.rule).strip()
            if 'max_n' in sec:
                config.rule.max_n = int(sec['max_n'])
            if 'protection_pct' in sec:
                config.rule.protection_pct = float(sec['protection_pct'])
            if 'n' in sec:
                config.rule.n = int(sec['n'])
            if 'k' in sec:
                config.rule.k = float(sec['k'])
            if 'p' in sec:
                config.rule.p = float(sec['p'])
            if 'q' in sec:
                config.rule.q = float(sec['q'])
            if 'empty_cells_unsafe' in sec:
                config.rule.empty_cells_unsafe = sec.getboolean('empty_cells_unsafe')

        # Load solver section
        if 'solver' in parser:
            sec = parser['solver']
            config.solver.method = sec.get('method', config.solver.method).strip()
            config.solver.objective = sec.get('objective', config.solver.objective).strip()
            if 'fallback_method' in sec:
                fallback = sec['fallback_method'].strip()
                config.solver.fallback_method = fallback or None
            if 'max_exact_cells' in sec:
                config.solver.max_exact_cells = int(sec['max_exact_cells'])
            if 'time_limit' in sec:
                config.solver.time_limit = float(sec['time_limit'])
            if 'max_cut_rounds' in sec:
                config.solver.max_cut_rounds = int(sec['max_cut_rounds'])
            if 'workers' in sec:
                config.solver.workers = int(sec['workers'])
            if 'nonnegative' in sec:
                config.solver.nonnegative = sec.getboolean('nonnegative')
            if 'verify_ranges' in sec:
                config.solver.verify_ranges = sec.getboolean('verify_ranges')

        # Load output section
        if 'output' in parser:
            sec = parser['output']
            config.output.suppression_method = sec.get(
                'suppression_method', config.output.suppression_method
            ).strip()
            # Raw access keeps markers such as '%' intact
            if 'suppression_marker' in sec:
                config.output.suppression_marker = parser.get('output', 'suppression_marker', raw=True)
            if 'suppression_sentinel' in sec:
                config.output.suppression_sentinel = float(sec['suppression_sentinel'])
            if 'include_totals' in sec:
                config.output.include_totals = sec.getboolean('include_totals')

        logger.info(f"Configuration loaded from {config_path}")
        return config

    def to_ini(self, config_path: str) -> None:
        """Save configuration to INI file."""
        parser = configparser.ConfigParser(interpolation=None)

        parser['rule'] = {
            'rule': self.rule.rule,
            'max_n': str(self.rule.max_n),
            'protection_pct': str(self.rule.protection_pct),
            'n': str(self.rule.n),
            'k': str(self.rule.k),
            'p': str(self.rule.p),
            'q': str(self.rule.q),
            'empty_cells_unsafe': str(self.rule.empty_cells_unsafe).lower(),
        }

        parser['solver'] = {
            'method': self.solver.method,
            'objective': self.solver.objective,
            'fallback_method': self.solver.fallback_method or '',
            'max_exact_cells': str(self.solver.max_exact_cells),
            'time_limit': str(self.solver.time_limit),
            'max_cut_rounds': str(self.solver.max_cut_rounds),
            'workers': str(self.solver.workers),
            'nonnegative': str(self.solver.nonnegative).lower(),
            'verify_ranges': str(self.solver.verify_ranges).lower(),
        }

        parser['output'] = {
            'suppression_method': self.output.suppression_method,
            'suppression_marker': self.output.suppression_marker,
            'suppression_sentinel': str(self.output.suppression_sentinel),
            'include_totals': str(self.output.include_totals).lower(),
        }

        with open(config_path, 'w', encoding='utf-8') as f:
            parser.write(f)

        logger.info(f"Configuration saved to {config_path}")
