"""Test suite for the GEM engine."""
