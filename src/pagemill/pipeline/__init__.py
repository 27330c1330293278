"""Task/page orchestration core: repository, workers and their supervisor."""
