"""Artifact Store and typed artifact documents."""

from stagecraft.artifacts.store import ArtifactKind, ArtifactStore, Document, field_or_default

__all__ = ["ArtifactKind", "ArtifactStore", "Document", "field_or_default"]
