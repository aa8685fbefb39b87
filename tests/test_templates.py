"""Tests for the CDK-driven template engine."""

import json
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from stagecraft.config.settings import Settings
from stagecraft.core.errors import ConfigurationError, ConvergencePending, FatalStepError
from stagecraft.provisioning.base import CredentialContext, CredentialRole
from stagecraft.templates.engine import CdkTemplateEngine, StackTemplate, read_stack_outputs

TEMPLATE = StackTemplate("a-cloudfront", "StageACloudFrontStack", "stage-a-cloudfront")
TARGET = CredentialContext("target-profile", CredentialRole.TARGET, "us-east-1", "222222222222")


def completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def iac_settings(tmp_path):
    (tmp_path / "iac" / "a-cloudfront").mkdir(parents=True)
    return Settings(iac_dir=tmp_path / "iac", template_timeout=60)


@pytest.fixture
def which():
    with patch("stagecraft.templates.engine.shutil.which", return_value="/usr/bin/npx") as mock:
        yield mock


def engine_with(settings, run):
    return CdkTemplateEngine(settings, run=run)


class TestContextArgs:
    def test_flattens_context(self):
        args = TEMPLATE.context_args(
            {"domains": ["example.com", "www.example.com"], "prefix": "hello-spa", "skip": None}
        )

        assert args == [
            "-c",
            "stage-a-cloudfront:domains=example.com,www.example.com",
            "-c",
            "stage-a-cloudfront:prefix=hello-spa",
        ]


class TestDeploy:
    """Deploying a stack and reading its outputs."""

    def test_deploy_returns_stack_outputs(self, iac_settings, which):
        def run(cmd, **kwargs):
            outputs_file = Path(cmd[cmd.index("--outputs-file") + 1])
            outputs_file.write_text(
                json.dumps({"StageACloudFrontStack": {"DistributionId": "E1", "Port": 443}})
            )
            return completed()

        outputs = engine_with(iac_settings, run).deploy(TEMPLATE, TARGET, {"prefix": "hello-spa"})

        assert outputs == {"DistributionId": "E1", "Port": "443"}

    def test_deploy_command_line(self, iac_settings, which):
        run = MagicMock(return_value=completed())

        with pytest.raises(FatalStepError, match="no outputs file"):
            engine_with(iac_settings, run).deploy(TEMPLATE, TARGET, {"prefix": "hello-spa"})

        cmd = run.call_args.args[0]
        assert cmd[:4] == ["/usr/bin/npx", "cdk", "deploy", "StageACloudFrontStack"]
        assert cmd[cmd.index("--profile") + 1] == "target-profile"
        assert "stage-a-cloudfront:prefix=hello-spa" in cmd
        assert run.call_args.kwargs["timeout"] == 60
        assert run.call_args.kwargs["cwd"] == iac_settings.iac_dir / "a-cloudfront"

    def test_non_zero_exit_is_fatal_with_stderr_tail(self, iac_settings, which):
        run = MagicMock(return_value=completed(1, stderr="line\n" * 50 + "Stack failed"))

        with pytest.raises(FatalStepError) as exc_info:
            engine_with(iac_settings, run).deploy(TEMPLATE, TARGET, {})

        assert "status 1" in exc_info.value.message
        assert exc_info.value.details["stderr"].endswith("Stack failed")
        assert len(exc_info.value.details["stderr"].splitlines()) == 20

    def test_timeout_is_convergence_pending(self, iac_settings, which):
        run = MagicMock(side_effect=subprocess.TimeoutExpired(cmd="cdk", timeout=60))

        with pytest.raises(ConvergencePending, match="did not finish within 60s"):
            engine_with(iac_settings, run).deploy(TEMPLATE, TARGET, {})

    def test_missing_template_directory(self, iac_settings, which):
        other = StackTemplate("z-missing", "Missing", "missing")

        with pytest.raises(ConfigurationError, match="Template directory not found"):
            engine_with(iac_settings, MagicMock()).deploy(other, TARGET, {})

    def test_missing_cli(self, iac_settings):
        with patch("stagecraft.templates.engine.shutil.which", return_value=None):
            engine = engine_with(iac_settings, MagicMock())

        assert not engine.is_available
        with pytest.raises(ConfigurationError, match="not found on PATH"):
            engine.deploy(TEMPLATE, TARGET, {})


class TestDestroy:
    def test_destroy(self, iac_settings, which):
        run = MagicMock(return_value=completed())

        engine_with(iac_settings, run).destroy(TEMPLATE, TARGET)

        assert run.call_args.args[0][2:5] == ["destroy", "StageACloudFrontStack", "--force"]


class TestReadStackOutputs:
    def test_missing_stack_entry(self, tmp_path):
        path = tmp_path / "outputs.json"
        path.write_text(json.dumps({"OtherStack": {}}))

        with pytest.raises(FatalStepError, match="no entry for stack"):
            read_stack_outputs(path, "StageACloudFrontStack")

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "outputs.json"
        path.write_text("{")

        with pytest.raises(FatalStepError, match="Invalid outputs file"):
            read_stack_outputs(path, "StageACloudFrontStack")
