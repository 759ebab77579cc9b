"""Collector package for crashwatch.

Provides the Kubernetes watch-stream adapter that invokes the incident
pipeline whenever a Pod's observed state changes.

Submodules
----------
pod_watcher -- PodWatcher: reconnecting Pod watch with bounded concurrent reconciles.
"""

from crashwatch.collector.pod_watcher import PodWatcher

__all__ = ["PodWatcher"]
