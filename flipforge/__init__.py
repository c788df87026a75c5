"""
FlipForge Listing Pipeline.

Turns a raw product submission into a publishable listing through four
ordered phases, with market research sourced from verified marketplace APIs
or, when none are configured, AI-estimated data.
"""

__version__ = "1.0.0"
__author__ = "FlipForge Team"

# Lazy imports to avoid circular dependencies
def get_driver():
    """Get the PipelineDriver class (lazy import)."""
    from flipforge.pipeline.driver import PipelineDriver
    return PipelineDriver

__all__ = ["get_driver", "__version__"]
