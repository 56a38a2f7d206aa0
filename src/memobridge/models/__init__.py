"""Data models for memobridge."""
