"""Process-wide plumbing: settings, database, logging, metrics, scheduler."""
