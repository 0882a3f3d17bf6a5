"""Version-control plumbing for per-issue worktrees."""
