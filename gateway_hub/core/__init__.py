"""Core payment orchestration logic."""
