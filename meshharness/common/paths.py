"""Centralized path configuration for the harness.

Single source of truth for where bundled manifests and test artifacts live,
shared by the harness modules, the pytest fixtures and the test runner.
"""

from pathlib import Path


class ProjectPaths:
    """Project directory structure paths."""

    def __init__(self, base_path: Path | None = None):
        """Initialize project paths.

        Args:
            base_path: Optional base path for the project root.
                      If None, auto-detects from this file's location.
        """
        if base_path is None:
            # Auto-detect: go up from meshharness/common/paths.py to repository root
            self.root = Path(__file__).parent.parent.parent
        else:
            self.root = base_path

        # Package directories
        self.package = self.root / "meshharness"
        self.manifests = self.package / "manifests"

        # Test directories
        self.tests = self.root / "tests"
        self.results = self.tests / "results"

    def ensure_results_dir(self) -> None:
        """Ensure results directory exists."""
        self.results.mkdir(parents=True, exist_ok=True)


# Global singleton instance
paths = ProjectPaths()
