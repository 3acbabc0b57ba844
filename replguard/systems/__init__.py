"""ReplGuard — engine components."""
