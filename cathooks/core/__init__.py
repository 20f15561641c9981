"""Concurrency-safety kernel: locks, issue resolution, worktree metadata, git wrappers."""
