"""Tests for settings validation."""

import pytest
from pydantic import ValidationError

from repo_compliance_analyzer.core.config import AnalysisSettings, Settings


class TestAnalysisSettings:
    """Test analysis settings constraints."""

    def test_defaults_are_consistent(self):
        analysis = Settings().analysis

        assert analysis.heartbeat_interval_seconds < analysis.stale_run_seconds

    def test_heartbeat_must_beat_the_stale_window(self):
        with pytest.raises(ValidationError):
            AnalysisSettings(heartbeat_interval_seconds=60, stale_run_seconds=60)

    def test_unknown_depth_rejected(self):
        with pytest.raises(ValidationError):
            AnalysisSettings(default_depth="everything")
