"""Tests for policy loading, run settings and logging helpers."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from fundsweep.config import RunSettings, normalize_collections, resolve_credentials
from fundsweep.constants import COLLECTION_ORDER, DONATIONS, DONORS, TEAMS
from fundsweep.errors import ConfigurationError
from fundsweep.schemas.policy import OrphanAction, SanitizePolicy, load_policy
from fundsweep.utils.logger import RunLogger, _with_fields
from fundsweep.utils.timestamps import latest, to_datetime
from fundsweep.utils.worker_pool import WorkerPool

# ─── Policy ─────────────────────────────────────────────────────────────────


class TestPolicy:
    def test_bundled_policy_loads(self):
        policy = load_policy()
        assert policy.sentinels.org_id == "demo-org"
        assert policy.features.convert_likely_dollars is False
        assert policy.orphan_action("campaignAthletes", "athleteId") == OrphanAction.DELETE

    def test_missing_explicit_policy_file(self, tmp_path):
        with pytest.raises(ConfigurationError) as exc:
            load_policy(tmp_path / "nope.yaml")
        assert exc.value.missing.endswith("nope.yaml")

    def test_invalid_policy_rejected(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text("batch_size: 900\n")
        with pytest.raises(ConfigurationError):
            load_policy(path)

    def test_orphan_overrides_merge_with_defaults(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text("orphan_policies:\n  donations.campaignId: nullify\n")
        policy = load_policy(path)

        assert policy.orphan_action("donations", "campaignId") == OrphanAction.NULLIFY
        assert policy.orphan_action("donations", "athleteId") == OrphanAction.NULLIFY
        assert policy.orphan_action("campaignAthletes", "campaignId") == OrphanAction.DELETE

    def test_bad_orphan_key(self):
        with pytest.raises(ValidationError):
            SanitizePolicy(orphan_policies={"nowhere.field": "flag"})

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError):
            SanitizePolicy(batch_sise=10)

    def test_with_features(self):
        policy = SanitizePolicy()
        updated = policy.with_features(convert_likely_dollars=True, donor_aggregates=None)

        assert updated.features.convert_likely_dollars is True
        assert updated.features.donor_aggregates is False
        assert policy.features.convert_likely_dollars is False
        assert policy.with_features() is policy
        with pytest.raises(ConfigurationError):
            policy.with_features(nonsense=True)


# ─── Run settings ───────────────────────────────────────────────────────────


class TestRunSettings:
    def test_missing_project_id(self, monkeypatch, tmp_path):
        monkeypatch.delenv("FIREBASE_PROJECT_ID", raising=False)
        monkeypatch.delenv("GOOGLE_CLOUD_PROJECT", raising=False)
        with pytest.raises(ConfigurationError) as exc:
            RunSettings.from_args(search_dir=tmp_path)
        assert exc.value.missing == "project_id"

    def test_missing_credentials(self, monkeypatch, tmp_path):
        monkeypatch.delenv("GOOGLE_APPLICATION_CREDENTIALS", raising=False)
        with pytest.raises(ConfigurationError) as exc:
            RunSettings.from_args(project_id="p1", search_dir=tmp_path)
        assert exc.value.missing == "credentials"

    def test_credentials_file_must_exist(self, tmp_path):
        with pytest.raises(ConfigurationError) as exc:
            RunSettings.from_args(project_id="p1", credentials=str(tmp_path / "key.json"), search_dir=tmp_path)
        assert exc.value.missing.endswith("key.json")

    def test_default_key_file_beside_runner(self, monkeypatch, tmp_path):
        monkeypatch.delenv("GOOGLE_APPLICATION_CREDENTIALS", raising=False)
        key = tmp_path / "serviceAccountKey.json"
        key.write_text("{}")
        assert resolve_credentials(None, tmp_path) == key

    def test_settings_from_args(self, tmp_path):
        key = tmp_path / "key.json"
        key.write_text("{}")
        settings = RunSettings.from_args(
            project_id="p1",
            credentials=str(key),
            apply=True,
            collections=[DONORS, TEAMS],
            report_dir=str(tmp_path / "reports"),
        )
        assert settings.apply
        assert settings.collections == [TEAMS, DONORS]
        assert settings.report_dir == Path(tmp_path / "reports")

    def test_collections_default_and_validation(self):
        assert normalize_collections(None) == COLLECTION_ORDER
        assert normalize_collections([DONATIONS]) == [DONATIONS]
        with pytest.raises(ConfigurationError):
            normalize_collections(["payments"])


# ─── Utilities ──────────────────────────────────────────────────────────────


class TestUtilities:
    def test_with_fields(self):
        assert _with_fields("done", {}) == "done"
        assert _with_fields("done", {"planned": 3, "mode": "APPLY"}) == "done [planned=3 mode=APPLY]"

    def test_to_datetime_shapes(self):
        iso = to_datetime("2024-02-01T00:00:00Z")
        assert iso is not None and iso.year == 2024
        assert to_datetime({"_seconds": 0}) == to_datetime(0)
        assert to_datetime(1706745600000) == to_datetime(1706745600)
        assert to_datetime("garbage") is None
        assert to_datetime(True) is None

    def test_latest(self):
        assert latest(["2024-01-01", None, "2024-03-01T00:00:00Z"]).month == 3
        assert latest([None, "x"]) is None

    def test_rate_limiter_spacing_and_reset(self, rate_limiter):
        assert rate_limiter.wait("commit:p1", delay=0) == 0.0
        rate_limiter.wait("commit:p1", delay=0.01)
        assert rate_limiter.wait("commit:p1", delay=0.01) > 0
        rate_limiter.reset("commit:p1")
        assert rate_limiter.wait("commit:p1", delay=0.01) == 0.0

    def test_worker_pool_reports_failures(self):
        def work(n):
            if n == 2:
                raise ValueError("bad item")
            return n * 10

        pool = WorkerPool(max_workers=2)
        results = {item: (success, value) for success, item, value in pool.map(work, [1, 2, 3])}

        assert results[1] == (True, 10)
        assert results[2][0] is False and isinstance(results[2][1], ValueError)
        assert pool.get_stats()["total_failed"] == 1
        assert pool.get_stats()["total_successful"] == 2

    def test_run_logger_tracks_warnings_and_errors(self):
        run_logger = RunLogger("fundsweep.test", phase="DRY-RUN")
        run_logger.warning("chunk retried", chunk=1)
        run_logger.error("commit failed", exception=ValueError("denied"), chunk=2)

        summary = run_logger.get_error_summary()
        assert summary["total_warnings"] == 1
        assert summary["total_errors"] == 1
        assert summary["warnings"][0]["message"] == "chunk retried [chunk=1]"
        assert summary["errors"][0]["exception"] == "denied"
