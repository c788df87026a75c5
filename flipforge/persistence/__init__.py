"""Persistence module for the FlipForge pipeline."""

from flipforge.persistence.store import InMemoryPipelineStore, PipelineStore

__all__ = ["PipelineStore", "InMemoryPipelineStore"]
