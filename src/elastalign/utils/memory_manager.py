"""
Memory tracking and release checkpoints
"""

import psutil
import logging
import gc
from typing import Dict, Optional
from contextlib import contextmanager

logger = logging.getLogger(__name__)

GB = 1024 * 1024 * 1024


class MemoryManager:
    """Track process memory and release raster caches between stages"""

    def __init__(self, memory_limit_gb: Optional[float] = None):
        """
        Initialize memory manager

        Args:
            memory_limit_gb: Soft limit in GB, used for low memory warnings
                (None = total system memory)
        """
        self.memory_limit_gb = memory_limit_gb
        self._peak_usage_gb = 0.0
        self._checkpoints: Dict[str, float] = {}

    def get_memory_usage(self) -> float:
        """
        Get current memory usage in GB

        Returns:
            Resident set size of this process in GB
        """
        try:
            usage_gb = psutil.Process().memory_info().rss / GB
        except psutil.Error as e:
            logger.warning(f"Could not get memory usage: {e}")
            return 0.0
        self._peak_usage_gb = max(self._peak_usage_gb, usage_gb)
        return usage_gb

    def get_available_memory(self) -> float:
        """Get available system memory in GB"""
        return psutil.virtual_memory().available / GB

    def get_total_memory(self) -> float:
        """Get total system memory in GB"""
        return psutil.virtual_memory().total / GB

    def get_peak_usage(self) -> float:
        return self._peak_usage_gb

    def checkpoint(self, name: str):
        usage = self.get_memory_usage()
        self._checkpoints[name] = usage
        logger.debug(f"Memory checkpoint '{name}': {usage:.2f} GB")

    def log_memory_status(self, context: str = ""):
        """
        Log current memory status

        Args:
            context: Optional context string for the log
        """
        usage = self.get_memory_usage()
        available = self.get_available_memory()
        limit = self.memory_limit_gb or self.get_total_memory()

        context_str = f" ({context})" if context else ""
        logger.info(
            f"Memory status{context_str}: "
            f"used={usage:.2f}GB, available={available:.2f}GB, "
            f"peak={self._peak_usage_gb:.2f}GB"
        )
        if usage > limit * 0.85 or available < self.get_total_memory() * 0.15:
            logger.warning(f"Low memory warning: {usage:.2f}GB used, only {available:.2f}GB available")

    def release(self, rasterizer=None, context: str = ""):
        """
        Release checkpoint between pipeline stages

        Drops the rasterizer's cached image data and collects garbage.
        """
        before = self.get_memory_usage()
        if rasterizer is not None:
            rasterizer.release_all()
        gc.collect()
        after = self.get_memory_usage()
        freed = before - after
        if freed > 0.01:
            logger.debug(f"Released {freed * 1024:.1f} MB ({context})")

    @contextmanager
    def track_operation(self, name: str):
        """
        Context manager to track memory usage of an operation

        Example:
            with memory_manager.track_operation("feature_extraction"):
                extract_features(layers)
        """
        self.checkpoint(f"{name}_start")
        start_usage = self._checkpoints[f"{name}_start"]
        try:
            yield
        finally:
            end_usage = self.get_memory_usage()
            logger.info(f"Operation '{name}': memory change {end_usage - start_usage:+.2f} GB "
                        f"(now {end_usage:.2f} GB)")
