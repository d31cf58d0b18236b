"""Stack lifecycle: dependency-ordered start, stop and restart."""
