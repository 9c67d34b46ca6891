"""Dragon Ball Z card image to card database pipeline."""

from .card_pipeline import CardProcessingPipeline, build_database, rescan_card
from .config import PipelineConfig
from .models import BuildDbResult, CardOutcome, DiscoveredImage, FilenamePriors

__version__ = "0.1.0"

__all__ = [
    "BuildDbResult",
    "CardOutcome",
    "CardProcessingPipeline",
    "DiscoveredImage",
    "FilenamePriors",
    "PipelineConfig",
    "build_database",
    "rescan_card",
]
