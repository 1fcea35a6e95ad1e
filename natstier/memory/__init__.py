"""In-process memory tier for blocks, evicting the oldest first."""