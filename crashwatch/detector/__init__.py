"""Detector package: decides which container states are reportable failures."""

from crashwatch.detector.classifier import REPORTABLE_REASONS, FailureClassifier, classify

__all__ = ["FailureClassifier", "REPORTABLE_REASONS", "classify"]
