from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import List, Sequence

from .artifacts import ArtifactStore
from .ogr import OgrToolkit

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 500


class ParallelValidator:
    """Keep only artifacts that contain the expected layer.

    Probes run concurrently within fixed-size chunks. A probe that reports
    the layer missing and a probe that errors are treated the same way: the
    artifact is left out.
    """

    def __init__(
        self,
        store: ArtifactStore,
        toolkit: OgrToolkit,
        *,
        layer_name: str,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        self.store = store
        self.toolkit = toolkit
        self.layer_name = layer_name
        self.chunk_size = chunk_size

    async def validate(self, paths: Sequence[Path] | None = None) -> List[Path]:
        candidates = list(paths) if paths is not None else self.store.list_artifacts()
        total = len(candidates)
        valid: List[Path] = []

        for start in range(0, total, self.chunk_size):
            chunk = candidates[start : start + self.chunk_size]
            outcomes = await asyncio.gather(
                *(self.toolkit.has_layer(path, self.layer_name) for path in chunk),
                return_exceptions=True,
            )
            for path, outcome in zip(chunk, outcomes):
                if outcome is True:
                    valid.append(path)
                elif isinstance(outcome, BaseException):
                    logger.debug("Probe of %s raised %s; skipping", path, outcome)
                else:
                    logger.debug("Layer '%s' not found in %s; skipping", self.layer_name, path)
            logger.info(
                "Validated %d/%d artifacts (%d with layer '%s')",
                min(start + self.chunk_size, total),
                total,
                len(valid),
                self.layer_name,
            )

        return valid
