"""
Tests for the Fusion Scoring Engine.

This package contains tests for:
- Metric normalization
- Score calculation, exclusion and trend
- Weighting store bounds and upserts
- Variance-driven recalibration
- Feedback-decay learning
- Audit trail and engine boundary results
"""
