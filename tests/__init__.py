"""
Tests for the notification digest pipeline.
"""
