"""Tests for the bootstrap pipeline and report."""

import json
import sys
from dataclasses import dataclass, field
from pathlib import Path
from unittest.mock import patch

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from common import StageResult
from reporting import BootstrapReport
from stages import EXIT_OK, EXIT_UNEXPECTED, Pipeline, Stage, get_stages, list_stages
from stages.fips import FipsState
from conftest import FakeRunner, requires_openssl


@dataclass
class RecordingStage:
    """Stage stub that records calls and returns a canned result."""
    name: str
    exit_code: int
    result: StageResult = field(default_factory=lambda: StageResult(success=True))
    raises: Exception = None
    description: str = 'stub stage'
    seen_context: dict = None
    runs: int = 0

    def run(self, snapshot, context):
        self.runs += 1
        self.seen_context = dict(context)
        if self.raises:
            raise self.raises
        return self.result


def _stubs(**overrides):
    stages = [
        RecordingStage('fips', 10, StageResult(success=True, context_updates={'fips': 'decision'})),
        RecordingStage('tls', 20),
        RecordingStage('nginx', 30),
        RecordingStage('webssh2', 40),
    ]
    for stage in stages:
        if stage.name in overrides:
            stage.result = overrides[stage.name]
    return stages


class TestRegistry:
    """Tests for stage registration."""

    def test_order(self):
        assert list_stages() == ['fips', 'tls', 'nginx', 'webssh2']

    def test_instances_follow_protocol(self, paths):
        stages = get_stages(paths)
        assert all(isinstance(s, Stage) for s in stages)
        assert [s.exit_code for s in stages] == [10, 20, 30, 40]
        assert len({s.exit_code for s in stages}) == 4


class TestPipelineRun:
    """Tests for Pipeline.run."""

    def test_all_pass(self, paths, make_snapshot):
        stages = _stubs()
        outcome = Pipeline(make_snapshot(), paths, stages=stages).run()

        assert outcome.success
        assert outcome.exit_code == EXIT_OK
        assert all(s.runs == 1 for s in stages)

    def test_context_flows_forward(self, paths, make_snapshot):
        stages = _stubs()
        Pipeline(make_snapshot(), paths, stages=stages).run()
        assert 'fips' not in stages[0].seen_context
        assert stages[1].seen_context['fips'] == 'decision'

    def test_stops_at_first_failure(self, paths, make_snapshot):
        """Later stages never run after a failure."""
        stages = _stubs(tls=StageResult(success=False, message='[TLS] ERROR: boom'))
        outcome = Pipeline(make_snapshot(), paths, stages=stages).run()

        assert not outcome.success
        assert outcome.exit_code == 20
        assert outcome.failed_stage == 'tls'
        assert outcome.message == '[TLS] ERROR: boom'
        assert stages[2].runs == 0
        assert stages[3].runs == 0

    def test_exception_becomes_failure(self, paths, make_snapshot):
        stages = _stubs()
        stages[2].raises = RuntimeError('unexpected')
        outcome = Pipeline(make_snapshot(), paths, stages=stages).run()

        assert outcome.exit_code == EXIT_UNEXPECTED
        assert outcome.failed_stage == 'nginx'
        assert stages[3].runs == 0

    def test_skip(self, paths, make_snapshot):
        stages = _stubs()
        outcome = Pipeline(make_snapshot(), paths, stages=stages, skip_stages=['tls']).run()
        assert outcome.success
        assert stages[1].runs == 0
        assert stages[2].runs == 1

    def test_warnings_aggregated(self, paths, make_snapshot):
        stages = _stubs(
            fips=StageResult(success=True, warnings=['[FIPS] w1']),
            webssh2=StageResult(success=True, warnings=['[WebSSH2] w2']),
        )
        outcome = Pipeline(make_snapshot(), paths, stages=stages).run()
        assert outcome.warnings == ['[FIPS] w1', '[WebSSH2] w2']

    def test_dry_run_runs_nothing(self, paths, make_snapshot, capsys):
        stages = _stubs()
        outcome = Pipeline(make_snapshot(), paths, stages=stages, skip_stages=['nginx'], dry_run=True).run()

        assert outcome.success
        assert all(s.runs == 0 for s in stages)
        out = capsys.readouterr().out
        assert 'DRY-RUN' in out
        assert '[SKIP] nginx' in out
        assert '3 stages to execute, 1 to skip' in out

    def test_report_written(self, paths, make_snapshot):
        stages = _stubs(nginx=StageResult(success=False, message='bad config'))
        Pipeline(make_snapshot(), paths, stages=stages).run()

        data = json.loads((paths.report_dir / 'bootstrap.json').read_text())
        assert data['success'] is False
        assert data['exit_code'] == 30
        assert data['error'] == 'bad config'
        assert [s['status'] for s in data['stages']] == ['passed', 'passed', 'failed']


class TestBootstrapScenarios:
    """End-to-end runs of the real stages with external tools stubbed."""

    @pytest.fixture
    def runner(self):
        def _nginx_check(cmd):
            return 0, '', 'nginx: configuration file test is successful'
        return FakeRunner({
            ('nginx', '-t'): _nginx_check,
            ('node', '--version'): (0, 'v20.11.1\n', ''),
            ('openssl', 'version'): (0, 'OpenSSL 3.0.7\n', ''),
            ('openssl', 'list'): (0, 'Providers:\n  default\n', ''),
            ('update-crypto-policies',): (127, '', 'Command not found'),
        })

    @pytest.fixture
    def stages(self, paths, runner):
        stages = get_stages(paths)
        for stage in stages:
            if hasattr(stage, 'runner'):
                stage.runner = runner
        return stages

    @requires_openssl
    def test_default_self_signed_non_fips(self, paths, make_snapshot, stages, webssh2_install):
        """FIPS disabled, self-signed TLS: bootstrap succeeds with a generated cert."""
        with patch('stages.tls.start_dhparam_generation') as mock_dh:
            outcome = Pipeline(make_snapshot(), paths, stages=stages).run()

        assert outcome.success, outcome.message
        assert outcome.context['fips'].state == FipsState.DISABLED
        assert Path(outcome.context['certificate'].cert_path).is_file()
        assert 'WEBSSH2_SESSION_SECRET' in outcome.context['backend_env']
        assert any('session secret' in w for w in outcome.warnings)
        mock_dh.assert_called_once()

    def test_strict_fips_on_plain_host_fails_first(self, paths, make_snapshot, stages):
        """FIPS required but unverifiable aborts before any TLS work."""
        snapshot = make_snapshot(FIPS_MODE='enabled', FIPS_CHECK='true')
        outcome = Pipeline(snapshot, paths, stages=stages).run()

        assert outcome.exit_code == 10
        assert outcome.failed_stage == 'fips'
        assert not paths.certs_dir.exists()

    def test_provided_mode_without_material(self, paths, make_snapshot, stages):
        outcome = Pipeline(make_snapshot(TLS_MODE='provided'), paths, stages=stages).run()
        assert outcome.exit_code == 20
        assert 'No certificates provided' in outcome.message

    @requires_openssl
    def test_degraded_fips_warnings_visible(self, paths, make_snapshot, stages, webssh2_install):
        snapshot = make_snapshot(FIPS_MODE='enabled', FIPS_CHECK='false', WEBSSH2_SSH_ALGORITHMS_PRESET='legacy')
        outcome = Pipeline(snapshot, paths, stages=stages).run()

        assert outcome.success, outcome.message
        assert outcome.context['fips'].state == FipsState.ENABLED_DEGRADED
        assert any(w.startswith('[FIPS]') for w in outcome.warnings)
        assert outcome.context['backend_env']['WEBSSH2_SSH_ALGORITHMS_PRESET'] == 'modern'


class TestBootstrapReport:
    """Tests for BootstrapReport."""

    def test_records_and_duration(self, tmp_path):
        report = BootstrapReport(report_dir=tmp_path)
        report.start()
        report.start_stage('fips', 'Verify FIPS')
        report.pass_stage('fips', 'ok', 0.1, ['[FIPS] w'])
        report.skip_stage('tls', 'TLS')
        report.finish(True, 0)

        assert [s.status for s in report.stages] == ['passed', 'skipped']
        assert report.stages[0].description == 'Verify FIPS'
        assert report.warnings == ['[FIPS] w']
        assert report.duration >= 0
        assert json.loads((tmp_path / 'bootstrap.json').read_text())['success'] is True

    def test_no_report_dir(self):
        report = BootstrapReport()
        report.start()
        report.finish(True)
        assert report.to_dict()['success'] is True

    def test_unwritable_report_dir(self, tmp_path):
        """Report write failures never fail the bootstrap."""
        blocker = tmp_path / 'file'
        blocker.write_text('')
        report = BootstrapReport(report_dir=blocker / 'sub')
        report.start()
        report.finish(False, 30)
        assert report.exit_code == 30
