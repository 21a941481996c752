"""
Config Loader

Loads and merges live-feed configurations from YAML files.

Layout:
    config/
      feeds/
        default.yaml
        tech.yaml
"""

import yaml
from pathlib import Path
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator
import logging

from dataflow.adapters.polygon_stream import StreamConfig

logger = logging.getLogger(__name__)


class StreamSettings(BaseModel):
    """Polygon stream connection settings"""
    url: str = "wss://socket.polygon.io/stocks"
    reconnect_delay: float = Field(default=3.0, gt=0)


class FeedConfig(BaseModel):
    """A set of symbols to stream and how to aggregate them"""
    symbols: List[str] = Field(default_factory=list)
    interval_minutes: int = Field(default=1, ge=1)
    max_candles: Optional[int] = Field(default=None, ge=1)
    stream: StreamSettings = Field(default_factory=StreamSettings)

    @field_validator("symbols")
    @classmethod
    def normalize_symbols(cls, v: List[str]) -> List[str]:
        """Upper-case, strip and de-duplicate symbols, keeping order"""
        seen = []
        for symbol in v:
            symbol = symbol.strip().upper()
            if symbol and symbol not in seen:
                seen.append(symbol)
        return seen

    def to_stream_config(self, api_key: str) -> StreamConfig:
        return StreamConfig(
            url=self.stream.url,
            api_key=api_key,
            reconnect_delay=self.stream.reconnect_delay,
        )


class ConfigLoader:
    """
    Loads and merges feed configs from YAML.

    The loader:
    1. Finds all YAML files in the feeds directory
    2. Loads and validates each file
    3. Merges symbol lists (duplicates collapse)
    4. Rejects conflicting aggregation or stream settings

    Example usage:
        loader = ConfigLoader(Path("config"))
        feed = loader.load_feed()
        feed.symbols  # ["AAPL", "MSFT", ...]
    """

    def __init__(self, config_dir: Path):
        """
        Initialize loader with config directory.

        Args:
            config_dir: Root config directory (contains feeds/ subdirectory)
        """
        self.config_dir = config_dir
        logger.info(f"Initialized ConfigLoader with config_dir: {config_dir}")

    def load_feed(self) -> FeedConfig:
        """
        Load all feed YAML files and merge them into one FeedConfig.

        Raises:
            ValueError: If no config found, conflicts exist, or validation fails
        """
        feeds_dir = self.config_dir / "feeds"

        if not feeds_dir.exists():
            raise ValueError(f"No feeds config directory. Expected: {feeds_dir}")

        yaml_files = sorted(feeds_dir.glob("*.yaml"))
        if not yaml_files:
            raise ValueError(f"No YAML files found in {feeds_dir}")

        logger.info(f"Loading {len(yaml_files)} feed YAML files")

        configs = []
        for yaml_file in yaml_files:
            try:
                with open(yaml_file) as f:
                    raw = yaml.safe_load(f) or {}
                config = FeedConfig(**raw)
            except Exception as e:
                logger.error(f"Failed to load {yaml_file}: {e}")
                raise ValueError(f"Failed to load {yaml_file}: {e}")

            configs.append((yaml_file.name, config))
            logger.debug(f"Loaded {yaml_file.name}: {len(config.symbols)} symbols")

        merged = self._merge_configs(configs)
        logger.info(
            f"Loaded feed: {len(merged.symbols)} symbols, "
            f"{merged.interval_minutes}m candles"
        )
        return merged

    def _merge_configs(self, configs: List[tuple]) -> FeedConfig:
        """
        Merge feed configs, validating that shared settings agree.

        Raises:
            ValueError: If files disagree on interval, retention or stream settings
        """
        first_name, merged = configs[0]
        symbols = list(merged.symbols)

        for name, config in configs[1:]:
            for attr in ("interval_minutes", "max_candles", "stream"):
                if getattr(config, attr) != getattr(merged, attr):
                    raise ValueError(
                        f"Conflicting {attr} between {first_name} and {name}: "
                        f"{getattr(merged, attr)} != {getattr(config, attr)}"
                    )
            for symbol in config.symbols:
                if symbol in symbols:
                    logger.debug(f"Symbol {symbol} already configured, skipping")
                else:
                    symbols.append(symbol)

        return merged.model_copy(update={"symbols": symbols})
