"""
Memory monitoring for table construction and solving.

The cell table grows multiplicatively with hierarchy breadth; checkpoints
record process and system memory around the expensive stages.
"""

import logging
from typing import Any, Dict

import psutil


logger = logging.getLogger(__name__)


class MemoryMonitor:
    """
    Records memory checkpoints of the current process.

    Each checkpoint stores resident set size plus system-wide usage so that
    the growth caused by one stage can be read off the summary.
    """

    def __init__(self):
        self._process = psutil.Process()
        self._checkpoints: Dict[str, Dict[str, Any]] = {}

    def log_memory(self, label: str) -> Dict[str, float]:
        """
        Log current memory usage.

        Args:
            label: Description of current checkpoint

        Returns:
            Dict with memory statistics (GB and %)
        """
        vm = psutil.virtual_memory()
        rss_gb = self._process.memory_info().rss / (1024**3)

        stats = {
            'label': label,
            'rss_gb': rss_gb,
            'used_gb': vm.used / (1024**3),
            'total_gb': vm.total / (1024**3),
            'percent': vm.percent,
            'available_gb': vm.available / (1024**3),
        }

        logger.info(
            f"[MEMORY] {label}: process={rss_gb:.3f} GB, "
            f"system={stats['used_gb']:.2f}/{stats['total_gb']:.2f} GB ({vm.percent:.1f}%)"
        )

        self._checkpoints[label] = stats
        return stats

    @property
    def checkpoints(self) -> Dict[str, Dict[str, Any]]:
        return dict(self._checkpoints)

    def delta(self, start: str, end: str) -> float:
        """Process memory growth in GB between two checkpoints."""
        return self._checkpoints[end]['rss_gb'] - self._checkpoints[start]['rss_gb']

    def summary(self) -> str:
        """
        Generate summary of all checkpoints.

        Returns:
            Formatted summary string
        """
        lines = [
            "=" * 60,
            "Memory Usage Summary",
            "=" * 60,
        ]
        for label, stats in self._checkpoints.items():
            lines.append(
                f"{label}: process={stats['rss_gb']:.3f} GB, "
                f"system={stats['used_gb']:.2f} GB ({stats['percent']:.1f}%)"
            )
        lines.append("=" * 60)
        return "\n".join(lines)
