"""Pipeline registry: pipeline shapes and round metadata.

Loads ``pipelines.yaml`` from this package directory and provides pure
lookups from pipeline type to its ordered round kinds, and from round kind
to human-readable metadata and handler family. The registry carries no
business logic and makes no remote calls.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict
import yaml

from assessment_pipeline.models import PipelineType, RoundFamily, RoundKind

logger = logging.getLogger(__name__)

_REGISTRY_FILE: Path = Path(__file__).parent / "pipelines.yaml"


class RoundMetadata(BaseModel):
    """Human-readable description of a round kind.

    Attributes:
        kind: The round kind described.
        display_name: Name shown to candidates.
        description: One-line description of the round.
        family: Handler family serving the round.
    """

    model_config = ConfigDict(frozen=True)

    kind: RoundKind
    display_name: str
    description: str = ""
    family: RoundFamily


class PipelineRegistry:
    """Registry of pipeline sequences and round metadata.

    Reads the declared data once on construction. Unknown round kinds in
    the data file are skipped with a warning rather than failing the load.
    """

    def __init__(self, path: Path | None = None) -> None:
        """Load pipeline and round declarations.

        Args:
            path: Alternate YAML file; defaults to the packaged ``pipelines.yaml``.

        Raises:
            ValueError: If a pipeline references a round kind without metadata.
        """
        self._path = path or _REGISTRY_FILE
        self._sequences: dict[PipelineType, tuple[RoundKind, ...]] = {}
        self._metadata: dict[RoundKind, RoundMetadata] = {}
        self._aliases: dict[str, PipelineType] = {}
        self._load()

    def _load(self) -> None:
        """Parse the YAML file and populate the lookup tables."""
        with self._path.open(encoding="utf-8") as fh:
            data: dict[str, Any] = yaml.safe_load(fh) or {}

        for raw_kind, entry in (data.get("rounds") or {}).items():
            try:
                kind = RoundKind(str(raw_kind))
            except ValueError:
                logger.warning("Skipping unknown round kind %r in registry", raw_kind)
                continue
            self._metadata[kind] = RoundMetadata(kind=kind, **entry)

        for raw_type, raw_rounds in (data.get("pipelines") or {}).items():
            pipeline_type = PipelineType(str(raw_type))
            sequence = tuple(RoundKind(str(r)) for r in raw_rounds)
            missing = [k for k in sequence if k not in self._metadata]
            if missing:
                msg = f"Pipeline {pipeline_type} references rounds without metadata: {missing}"
                raise ValueError(msg)
            self._sequences[pipeline_type] = sequence

        for alias, raw_type in (data.get("aliases") or {}).items():
            self._aliases[str(alias)] = PipelineType(str(raw_type))

    def sequence_for(self, pipeline_type: PipelineType) -> tuple[RoundKind, ...]:
        """Return the ordered round kinds of *pipeline_type*.

        Raises:
            KeyError: If no sequence is declared for *pipeline_type*.
        """
        if pipeline_type not in self._sequences:
            msg = f"No pipeline declared for {pipeline_type!r}"
            raise KeyError(msg)
        return self._sequences[pipeline_type]

    def metadata_for(self, kind: RoundKind) -> RoundMetadata:
        """Return the metadata of *kind*.

        Raises:
            KeyError: If *kind* has no metadata.
        """
        if kind not in self._metadata:
            msg = f"No metadata declared for round kind {kind!r}"
            raise KeyError(msg)
        return self._metadata[kind]

    def family_of(self, kind: RoundKind) -> RoundFamily:
        """Return the handler family serving *kind*."""
        return self.metadata_for(kind).family

    def resolve_pipeline(self, name: str) -> PipelineType:
        """Resolve a pipeline name or employer-type alias.

        Args:
            name: A ``PipelineType`` value (``hybrid_pipeline``) or an alias
                (``service``).

        Returns:
            The matching ``PipelineType``.

        Raises:
            ValueError: If *name* is neither a pipeline type nor an alias.
        """
        if name in self._aliases:
            return self._aliases[name]
        try:
            return PipelineType(name)
        except ValueError:
            known = sorted([*self._aliases, *(p.value for p in self._sequences)])
            msg = f"Unknown pipeline {name!r}; expected one of {known}"
            raise ValueError(msg) from None

    def pipeline_types(self) -> list[PipelineType]:
        """Return the declared pipeline types in declaration order."""
        return list(self._sequences)
