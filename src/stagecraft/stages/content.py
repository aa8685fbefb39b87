"""Bucket uploads and edge cache invalidation shared by the content stages."""

from __future__ import annotations

import mimetypes
from pathlib import Path
from typing import Callable, Sequence

import structlog

from stagecraft.config.settings import Settings
from stagecraft.core.errors import ConfigurationError, ConvergencePending
from stagecraft.provisioning.base import InvalidationStatus
from stagecraft.stages.base import StageContext

logger = structlog.get_logger()

NO_CACHE = "no-cache, no-store, must-revalidate"
LONG_CACHE = "public, max-age=31536000"
SHORT_CACHE = "public, max-age=300"
SHORT_CACHE_FILES = frozenset({"service-worker.js", "manifest.json"})

ALL_PATHS = ("/*",)


def no_cache_policy(path: Path) -> str | None:
    return None


def spa_cache_policy(path: Path) -> str:
    """HTML is always revalidated; fingerprinted assets are cached for a year."""
    if path.suffix == ".html":
        return NO_CACHE
    if path.name in SHORT_CACHE_FILES:
        return SHORT_CACHE
    return LONG_CACHE


def bundle_files(source: Path) -> list[Path]:
    """Every file under ``source``; the bundle must have a root index.html."""
    files = sorted(p for p in source.rglob("*") if p.is_file()) if source.is_dir() else []
    if not any(p.relative_to(source).as_posix() == "index.html" for p in files):
        raise ConfigurationError(f"No index.html found under {source}", {"path": str(source)})
    return files


def built_bundle(settings: Settings, app: str) -> Path:
    """Build output of a single-page app under ``content_dir``."""
    app_dir = settings.content_dir / app
    source = app_dir / settings.app_build_dir
    if not (source / "index.html").is_file():
        raise ConfigurationError(
            f"No built bundle at {source}; run 'npm run build' in {app_dir} first",
            {"app": app},
        )
    return source


def upload_bundle(
    ctx: StageContext,
    source: Path,
    bucket: str,
    cache_policy: Callable[[Path], str | None] = no_cache_policy,
) -> list[str]:
    target = ctx.credentials.target
    uploaded = []
    for path in bundle_files(source):
        key = path.relative_to(source).as_posix()
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        ctx.api.upload_object(
            target, bucket, key, path.read_bytes(), content_type, cache_control=cache_policy(path)
        )
        uploaded.append(key)
    logger.info("content_uploaded", bucket=bucket, files=len(uploaded), source=str(source))
    return uploaded


def invalidate(ctx: StageContext, distribution_id: str, paths: Sequence[str] = ALL_PATHS) -> str:
    return ctx.api.create_invalidation(ctx.credentials.target, distribution_id, list(paths))


def wait_for_invalidation(ctx: StageContext, distribution_id: str, invalidation_id: str) -> None:
    """Raise ``ConvergencePending`` while edge caches may still serve old content."""
    target = ctx.credentials.target
    probe = ctx.prober.wait_for(
        lambda: ctx.api.invalidation_status(target, distribution_id, invalidation_id),
        {InvalidationStatus.COMPLETED},
        interval=ctx.settings.invalidation_poll_interval,
        max_attempts=ctx.settings.invalidation_max_attempts,
        label=f"invalidation {invalidation_id}",
    )
    if not probe.succeeded:
        raise ConvergencePending(
            f"Cache invalidation {invalidation_id} on {distribution_id} is still {probe.status}",
            {"attempts": probe.attempts},
        )
