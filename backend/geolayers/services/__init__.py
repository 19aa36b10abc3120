"""Domain services used by the API routers and the worker dispatcher."""
