"""
Tabular SDC Engine
==================
Statistical Disclosure Control for hierarchical aggregate tables.

Protects published cross-tabulations by:
- Primary suppression of cells failing a disclosure rule
  (frequency, dominance, p-percent, pq)
- Secondary suppression so that no unsafe cell can be recovered from
  hierarchy totals (exact, top-down, geometric, simple strategies)
- Caller overrides for cells that must stay published or suppressed
"""

__version__ = "1.0.0"
__author__ = "Tabular SDC Team"

__all__ = [
    # Config
    "Config", "RuleConfig", "SolverConfig", "OutputConfig",
    # Pipeline
    "SDCPipeline", "ProtectionResult",
    # Rules and overrides
    "PrimarySuppressionEvaluator", "Overrides", "OverrideManager",
]

_MODULES = {
    "Config": ".config", "RuleConfig": ".config", "SolverConfig": ".config", "OutputConfig": ".config",
    "SDCPipeline": ".pipeline", "ProtectionResult": ".pipeline",
    "PrimarySuppressionEvaluator": ".suppression",
    "Overrides": ".overrides", "OverrideManager": ".overrides",
}


def __getattr__(name):
    if name in _MODULES:
        import importlib
        module = importlib.import_module(_MODULES[name], __name__)
        return getattr(module, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
