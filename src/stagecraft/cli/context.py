"""Wires settings and the AWS adapters into per-stage contexts."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

from stagecraft.artifacts.store import ArtifactStore
from stagecraft.config.settings import Settings, get_settings
from stagecraft.orchestration.prober import ResourceProber
from stagecraft.provisioning.aws import AwsProvisioningAPI
from stagecraft.provisioning.base import ProvisioningAPI
from stagecraft.provisioning.http import EndpointChecker
from stagecraft.stages.base import StageContext, decline
from stagecraft.stages.registry import get_stage
from stagecraft.templates.engine import CdkTemplateEngine, TemplateEngine


def load_settings(data_dir: str | Path | None = None) -> Settings:
    settings = get_settings()
    if data_dir:
        settings = settings.model_copy(update={"data_dir": Path(data_dir)})
    return settings


class ContextFactory:
    """Builds a :class:`StageContext` for any stage letter from shared collaborators."""

    def __init__(
        self,
        settings: Settings,
        *,
        api: ProvisioningAPI | None = None,
        templates: TemplateEngine | None = None,
        prober: ResourceProber | None = None,
        checker: EndpointChecker | None = None,
        confirm: Callable[[str], bool] = decline,
    ) -> None:
        self.settings = settings
        self.store = ArtifactStore(settings.data_dir)
        self.api = api or AwsProvisioningAPI(settings)
        self.templates = templates or CdkTemplateEngine(settings)
        self.prober = prober or ResourceProber()
        self.checker = checker or EndpointChecker(timeout=settings.http_timeout)
        self.confirm = confirm

    def __call__(self, letter: str, params: dict[str, Any] | None = None) -> StageContext:
        return StageContext(
            stage=get_stage(letter),
            store=self.store,
            api=self.api,
            templates=self.templates,
            prober=self.prober,
            checker=self.checker,
            settings=self.settings,
            params=dict(params or {}),
            confirm=self.confirm,
        )
