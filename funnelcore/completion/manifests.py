"""
Funnel manifests for catalog funnels.

A manifest is the versioned questionnaire definition resolved by slug:
ordered steps, each with ordered questions.  Loaders:

  InMemoryManifestLoader  dict of manifests (tests)
  FileManifestLoader      {MANIFEST_DIR}/{slug}.json (bundled defaults)
  GCSManifestLoader       funnel_manifests/{slug}.json
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from funnelcore.infrastructure.gcs import DocumentNotFoundError

logger = logging.getLogger("completion.manifests")


class ManifestNotFoundError(Exception):
    """No manifest exists for the slug."""
    pass


class ManifestLoadError(Exception):
    """The manifest exists but could not be read or parsed."""
    pass


class ManifestQuestion(BaseModel):
    id: str
    key: str
    label: str = ""
    type: str = "text"
    required: bool = False


class ManifestStep(BaseModel):
    id: str
    title: str = ""
    questions: list[ManifestQuestion] = Field(default_factory=list)


class FunnelManifest(BaseModel):
    slug: str
    version: str = "1.0.0"
    title: str = ""
    steps: list[ManifestStep] = Field(default_factory=list)

    def iter_questions(self):
        for step in self.steps:
            yield from step.questions


def _parse(slug: str, raw: dict) -> FunnelManifest:
    try:
        return FunnelManifest.model_validate(raw)
    except ValidationError as exc:
        raise ManifestLoadError(f"Invalid manifest for {slug}: {exc}") from exc


class ManifestLoader(ABC):
    @abstractmethod
    def load_manifest(self, slug: str) -> FunnelManifest:
        """Raises ManifestNotFoundError or ManifestLoadError."""


class InMemoryManifestLoader(ManifestLoader):
    def __init__(self, manifests: dict[str, FunnelManifest] | None = None) -> None:
        self._manifests = dict(manifests or {})

    def add(self, manifest: FunnelManifest) -> None:
        self._manifests[manifest.slug] = manifest

    def load_manifest(self, slug: str) -> FunnelManifest:
        manifest = self._manifests.get(slug)
        if manifest is None:
            raise ManifestNotFoundError(slug)
        return manifest


class FileManifestLoader(ManifestLoader):
    def __init__(self, manifest_dir: str | Path) -> None:
        self._dir = Path(manifest_dir)

    def load_manifest(self, slug: str) -> FunnelManifest:
        # Slugs come from the URL; never let them escape the directory
        if not slug or "/" in slug or "\\" in slug or slug.startswith("."):
            raise ManifestNotFoundError(slug)
        path = self._dir / f"{slug}.json"
        if not path.is_file():
            raise ManifestNotFoundError(slug)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ManifestLoadError(f"Could not read manifest {path}: {exc}") from exc
        return _parse(slug, raw)


class GCSManifestLoader(ManifestLoader):
    MANIFEST_PREFIX = "funnel_manifests"

    def __init__(self, gcs_bucket_manager) -> None:
        self._gcs = gcs_bucket_manager

    def load_manifest(self, slug: str) -> FunnelManifest:
        path = f"{self.MANIFEST_PREFIX}/{slug}.json"
        try:
            raw, _ = self._gcs.read_json(path)
        except DocumentNotFoundError as exc:
            raise ManifestNotFoundError(slug) from exc
        except Exception as exc:
            logger.error("Failed to load manifest %s: %s", path, exc)
            raise ManifestLoadError(f"Could not load manifest {slug}: {exc}") from exc
        return _parse(slug, raw)
