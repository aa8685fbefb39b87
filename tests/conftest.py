"""Root test configuration."""

from __future__ import annotations

import logging
from typing import Any

import pytest
import structlog
from fakes import (
    FakeChecker,
    FakeProvisioningAPI,
    FakeTemplateEngine,
    stage_a_outputs,
    stage_b_outputs,
    stage_c_outputs,
    stage_d_outputs,
)

from stagecraft.artifacts.store import ArtifactKind, ArtifactStore
from stagecraft.cli.context import ContextFactory
from stagecraft.config.settings import Settings
from stagecraft.orchestration.prober import ResourceProber
from stagecraft.stages.base import StageContext, decline


def pytest_configure(config):
    """Configure structlog for tests to suppress debug/info output."""
    logging.basicConfig(level=logging.WARNING, force=True)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


@pytest.fixture
def settings(tmp_path) -> Settings:
    content = tmp_path / "apps" / "hello-world-html"
    content.mkdir(parents=True)
    (content / "index.html").write_text(
        "<html><body><h1>CloudFront Distribution is Working!</h1></body></html>"
    )
    (content / "styles.css").write_text("body { margin: 0; }")
    react = tmp_path / "apps" / "hello-world-react" / "dist"
    (react / "assets").mkdir(parents=True)
    (react / "index.html").write_text('<html><body><div id="root"></div></body></html>')
    (react / "assets" / "index-3f2a.js").write_text("console.log('app')")
    api_app = tmp_path / "apps" / "hello-world-json" / "dist"
    api_app.mkdir(parents=True)
    (api_app / "index.html").write_text(
        '<html><body><div id="root" data-api="/api/"></div></body></html>'
    )
    return Settings(
        data_dir=tmp_path / "data",
        iac_dir=tmp_path / "iac",
        content_dir=tmp_path / "apps",
        certificate_poll_interval=0,
        certificate_max_attempts=5,
        distribution_poll_interval=0,
        distribution_max_attempts=5,
        invalidation_poll_interval=0,
        invalidation_max_attempts=5,
        provider_backoff_multiplier=0,
        rollback_delete_attempts=3,
        rollback_delete_interval=0,
    )


@pytest.fixture
def store(settings) -> ArtifactStore:
    return ArtifactStore(settings.data_dir)


@pytest.fixture
def fake_api() -> FakeProvisioningAPI:
    return FakeProvisioningAPI()


@pytest.fixture
def fake_templates(fake_api) -> FakeTemplateEngine:
    return FakeTemplateEngine(api=fake_api)


@pytest.fixture
def fake_checker() -> FakeChecker:
    return FakeChecker()


@pytest.fixture
def prober() -> ResourceProber:
    return ResourceProber(sleep=lambda seconds: None)


@pytest.fixture
def factory(settings, fake_api, fake_templates, prober, fake_checker) -> ContextFactory:
    return ContextFactory(
        settings,
        api=fake_api,
        templates=fake_templates,
        prober=prober,
        checker=fake_checker,
    )


@pytest.fixture
def make_context(settings, store, fake_api, fake_templates, prober, fake_checker):
    """Build a StageContext for an arbitrary (possibly synthetic) stage."""

    def _make(stage, params=None, confirm=decline) -> StageContext:
        return StageContext(
            stage=stage,
            store=store,
            api=fake_api,
            templates=fake_templates,
            prober=prober,
            checker=fake_checker,
            settings=settings,
            params=dict(params or {}),
            confirm=confirm,
        )

    return _make


@pytest.fixture
def deployed_a(store) -> dict[str, Any]:
    outputs = stage_a_outputs()
    store.save("a", ArtifactKind.OUTPUTS, outputs)
    return outputs


@pytest.fixture
def deployed_b(store, deployed_a) -> dict[str, Any]:
    outputs = stage_b_outputs()
    store.save("b", ArtifactKind.OUTPUTS, outputs)
    return outputs


@pytest.fixture
def deployed_c(store, deployed_b) -> dict[str, Any]:
    outputs = stage_c_outputs()
    store.save("c", ArtifactKind.OUTPUTS, outputs)
    return outputs


@pytest.fixture
def deployed_d(store, deployed_c) -> dict[str, Any]:
    outputs = stage_d_outputs()
    store.save("d", ArtifactKind.OUTPUTS, outputs)
    return outputs
