"""Analyzers for package version histories."""

from scriptwatch.analyzers.lifecycle import LifecycleDetector, detect, pick_version_pair

__all__ = ["LifecycleDetector", "detect", "pick_version_pair"]
