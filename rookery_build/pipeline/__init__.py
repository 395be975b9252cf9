"""Restartable build pipeline utilities.

This package provides:
- Pipeline configuration (TOML)
- A checkpoint store keyed by unit name and gated on input hashes
- A stage executor that skips units whose checkpoint is still valid
- The source download stage (fetch, verify, record)

A build that dies half way is simply run again: finished units are
skipped and the first unfinished one picks up where it stopped.
"""
