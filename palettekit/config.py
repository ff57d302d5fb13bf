"""
palettekit Configuration
Manages environment variables and defaults for the extraction engine.
"""
import os


class Config:
    """Configuration class for palettekit extraction."""

    # Logging
    LOG_LEVEL: str = os.environ.get("PALETTEKIT_LOG_LEVEL", "INFO")

    # Palette size
    DEFAULT_TARGET_COLORS: int = int(os.environ.get("PALETTEKIT_DEFAULT_TARGET_COLORS", "5"))
    MAX_TARGET_COLORS: int = int(os.environ.get("PALETTEKIT_MAX_TARGET_COLORS", "32"))

    # Sampling
    ALPHA_THRESHOLD: int = int(os.environ.get("PALETTEKIT_ALPHA_THRESHOLD", "125"))
    HISTOGRAM_MAX_EDGE: int = int(os.environ.get("PALETTEKIT_HISTOGRAM_MAX_EDGE", "150"))
    CENTROID_MAX_EDGE: int = int(os.environ.get("PALETTEKIT_CENTROID_MAX_EDGE", "100"))

    # Cooperative scheduling
    ROWS_PER_YIELD: int = int(os.environ.get("PALETTEKIT_ROWS_PER_YIELD", "10"))
    NEIGHBORS_PER_YIELD: int = int(os.environ.get("PALETTEKIT_NEIGHBORS_PER_YIELD", "50"))
    CHANNEL_MAX_QUEUE: int = int(os.environ.get("PALETTEKIT_CHANNEL_MAX_QUEUE", "16"))

    # Centroid clustering fan-out
    CENTROID_WORKERS: int = int(os.environ.get("PALETTEKIT_CENTROID_WORKERS", "4"))

    # Observability
    METRICS_ENABLED: bool = bool(int(os.environ.get("PALETTEKIT_METRICS_ENABLED", "1")))

    # Registered extraction strategies
    SUPPORTED_STRATEGIES = ["density", "median_cut", "weighted", "centroid"]

    @classmethod
    def validate_strategy(cls, strategy: str) -> bool:
        """Validate strategy name."""
        return strategy in cls.SUPPORTED_STRATEGIES

    @classmethod
    def validate_target_colors(cls, target: int) -> bool:
        """Validate requested palette size."""
        return 1 <= target <= cls.MAX_TARGET_COLORS


# Global config instance
config = Config()
