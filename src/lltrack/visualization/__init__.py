"""Visualization utilities for tracking."""

from .rerun_visualizer import RerunVisualizer

__all__ = ["RerunVisualizer"]
