"""Source configuration loader for docwatch.

Loads and validates per-source YAML files. Each file describes one
documentation site and the crawl policy applied to it.
"""

import os
import yaml
from pathlib import Path
from typing import Dict, List, Any, Optional
from dataclasses import dataclass, field
import logging

from pipelines.policy import CrawlPolicy

logger = logging.getLogger(__name__)

SOURCE_KINDS = ("docs", "repo", "api_ref", "changelog")


class SourceConfigError(ValueError):
    """Raised for an invalid source definition."""


@dataclass
class SourceConfig:
    """Configuration for a documentation source."""
    id: str
    name: str
    base_url: str
    kind: str = "docs"
    trust_score: float = 1.0
    poll_interval_minutes: int = 60
    sitemap_url: Optional[str] = None
    seed_urls: List[str] = field(default_factory=list)
    policy: CrawlPolicy = field(default_factory=CrawlPolicy)
    enabled: bool = True

    def __post_init__(self):
        """Validate configuration after initialization."""
        if not self.id:
            raise SourceConfigError("Source id cannot be empty")

        if not self.base_url or not self.base_url.startswith(("http://", "https://")):
            raise SourceConfigError(f"Source {self.id} must have an http(s) base_url")

        if self.kind not in SOURCE_KINDS:
            raise SourceConfigError(f"Invalid kind for {self.id}: {self.kind}")

        if not 0 <= self.trust_score <= 1:
            raise SourceConfigError(f"trust_score for {self.id} must be between 0 and 1")

        if self.poll_interval_minutes <= 0:
            raise SourceConfigError(f"poll_interval_minutes for {self.id} must be positive")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SourceConfig':
        """Create SourceConfig from dictionary."""
        try:
            return cls(
                id=data['id'],
                name=data.get('name', data['id']),
                base_url=data['base_url'],
                kind=data.get('kind', 'docs'),
                trust_score=float(data.get('trust_score', 1.0)),
                poll_interval_minutes=int(data.get('poll_interval_minutes', 60)),
                sitemap_url=data.get('sitemap_url'),
                seed_urls=list(data.get('seed_urls') or []),
                policy=CrawlPolicy.from_dict(data.get('policy')),
                enabled=data.get('enabled', True)
            )
        except KeyError as e:
            raise SourceConfigError(f"Missing required field: {e.args[0]}") from e

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (without the compiled policy)."""
        result = {
            'id': self.id,
            'name': self.name,
            'kind': self.kind,
            'base_url': self.base_url,
            'trust_score': self.trust_score,
            'poll_interval_minutes': self.poll_interval_minutes,
            'enabled': self.enabled
        }

        if self.sitemap_url:
            result['sitemap_url'] = self.sitemap_url
        if self.seed_urls:
            result['seed_urls'] = self.seed_urls

        return result


class SourceLoader:
    """Loads source configurations from YAML files."""

    def __init__(self, sources_dir: Optional[Path] = None):
        """Initialize source loader.

        Args:
            sources_dir: Directory containing source YAML files.
                        Defaults to ``DOCWATCH_SOURCES_DIR`` or this package's directory.
        """
        if sources_dir is None:
            sources_dir = os.getenv('DOCWATCH_SOURCES_DIR') or Path(__file__).parent

        self.sources_dir = Path(sources_dir)
        self._cache: Dict[str, SourceConfig] = {}
        self._last_modified: Dict[str, float] = {}

    def load_source_config(self, source_id: str) -> Optional[SourceConfig]:
        """Load configuration for a specific source.

        Args:
            source_id: Id of the source (file name without .yaml extension)

        Returns:
            SourceConfig if found and valid, None otherwise
        """
        yaml_file = self.sources_dir / f"{source_id}.yaml"

        if not yaml_file.exists():
            logger.warning(f"Source configuration not found: {yaml_file}")
            return None

        current_mtime = yaml_file.stat().st_mtime
        if (source_id in self._cache and
            source_id in self._last_modified and
            self._last_modified[source_id] >= current_mtime):
            return self._cache[source_id]

        try:
            with open(yaml_file, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)

            if not data or not isinstance(data, dict):
                logger.error(f"Empty or invalid YAML file: {yaml_file}")
                return None

            # Ensure id matches filename
            if 'id' not in data:
                data['id'] = source_id
            elif data['id'] != source_id:
                logger.warning(f"Source id mismatch in {yaml_file}: {data['id']} != {source_id}")
                data['id'] = source_id

            config = SourceConfig.from_dict(data)

            self._cache[source_id] = config
            self._last_modified[source_id] = current_mtime

            logger.info(f"Loaded source configuration: {source_id}")
            return config

        except yaml.YAMLError as e:
            logger.error(f"Failed to parse YAML file {yaml_file}: {e}")
            return None
        except (SourceConfigError, ValueError, TypeError) as e:
            logger.error(f"Invalid source configuration in {yaml_file}: {e}")
            return None

    def load_all_sources(self) -> Dict[str, SourceConfig]:
        """Load all source configurations from the sources directory.

        Returns:
            Dictionary mapping source ids to SourceConfig objects
        """
        sources = {}

        if not self.sources_dir.exists():
            logger.warning(f"Sources directory not found: {self.sources_dir}")
            return sources

        for yaml_file in sorted(self.sources_dir.glob("*.yaml")):
            source_id = yaml_file.stem
            config = self.load_source_config(source_id)
            if config:
                sources[source_id] = config

        logger.info(f"Loaded {len(sources)} source configurations")
        return sources

    def get_enabled_sources(self) -> Dict[str, SourceConfig]:
        """Get all enabled source configurations."""
        all_sources = self.load_all_sources()
        return {source_id: config for source_id, config in all_sources.items() if config.enabled}

    def reload_cache(self):
        """Clear cache to force reload of all configurations."""
        self._cache.clear()
        self._last_modified.clear()
        logger.info("Source configuration cache cleared")
