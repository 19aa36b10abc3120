"""Settings, error taxonomy and logging setup shared by API and worker."""
