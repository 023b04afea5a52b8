"""Step pipeline protocols, definitions, readers and writers."""

from cardbatch_engine.steps.base import (
    ChunkContext,
    ChunkListener,
    ItemProcessor,
    ItemReader,
    ItemWriter,
    JobDefinition,
    JobRegistry,
    PassThroughProcessor,
    StepDefinition,
    StepScope,
)

__all__ = [
    "ChunkContext",
    "ChunkListener",
    "ItemProcessor",
    "ItemReader",
    "ItemWriter",
    "JobDefinition",
    "JobRegistry",
    "PassThroughProcessor",
    "StepDefinition",
    "StepScope",
]
