"""
Generation pipeline contract.

Fetching, clustering and summarizing news happen elsewhere; this module
only defines how the refresh coordinator drives that work and how it
hears about progress.
"""
import importlib
import logging
from typing import Any, Callable, Dict, List, Optional, Union

from config.settings import Settings, settings as default_settings

from .cache.core import (
    STAGE_FETCHING,
    STAGE_FINALIZING,
    STAGE_SUMMARIZING,
    HomepageData,
)
from .exceptions import ConfigurationError

logger = logging.getLogger("homepage.pipeline")

ProgressCallback = Callable[[str, int], None]


class GenerationPipeline:
    """
    Produces a HomepageData from scratch.

    Implementations must be idempotent: two concurrent runs may both write
    their result and the last writer wins.
    """

    def generate(self, on_progress: ProgressCallback) -> HomepageData:
        raise NotImplementedError


class StagedPipeline(GenerationPipeline):
    """
    Three-stage pipeline built from plain callables.

    Args:
        fetch_and_cluster: Returns a HomepageData (or its dict form) with
            clusters built but not yet summarized
        summarize: Optional; called as summarize(clusters, report) where
            report(completed, total) tracks per-cluster summaries
        enrich: Optional; returns clusters with summaries merged in
    """

    def __init__(
        self,
        fetch_and_cluster: Callable[[], Union[HomepageData, Dict[str, Any]]],
        summarize: Optional[Callable[[List[Dict[str, Any]], Callable[[int, int], None]], None]] = None,
        enrich: Optional[Callable[[List[Dict[str, Any]]], List[Dict[str, Any]]]] = None,
    ):
        self.fetch_and_cluster = fetch_and_cluster
        self.summarize = summarize
        self.enrich = enrich

    def generate(self, on_progress: ProgressCallback) -> HomepageData:
        on_progress(STAGE_FETCHING, 10)
        data = self.fetch_and_cluster()
        if isinstance(data, dict):
            data = HomepageData.from_dict(data)
        logger.info(f"Generated homepage with {len(data.story_clusters)} clusters")

        clusters = list(data.story_clusters)
        on_progress(STAGE_SUMMARIZING, 50)
        if self.summarize and clusters:
            def report(completed: int, total: int) -> None:
                # Summaries span 50-90%
                if total > 0:
                    on_progress(STAGE_SUMMARIZING, 50 + (completed * 40) // total)

            self.summarize(clusters, report)

        on_progress(STAGE_FINALIZING, 95)
        if self.enrich:
            clusters = self.enrich(clusters)

        return HomepageData(
            story_clusters=clusters,
            unclustered_articles=list(data.unclustered_articles),
            topics=list(data.topics),
            rate_limit_message=data.rate_limit_message,
            last_updated=data.last_updated,
        )


def load_pipeline(settings: Settings = default_settings) -> GenerationPipeline:
    """
    Import the pipeline named by PIPELINE_FACTORY ("package.module:callable").

    Raises:
        ConfigurationError: If no factory is configured or it cannot be loaded
    """
    target = settings.pipeline_factory
    if not target:
        raise ConfigurationError("No generation pipeline configured (set PIPELINE_FACTORY)")

    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(f"PIPELINE_FACTORY must look like 'module:callable', got '{target}'")

    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot load pipeline factory '{target}': {e}") from e

    pipeline = factory()
    if not isinstance(pipeline, GenerationPipeline):
        raise ConfigurationError(f"'{target}' did not return a GenerationPipeline")
    logger.info(f"Loaded generation pipeline from {target}")
    return pipeline
