"""Data models for the Hathi storage layer."""
