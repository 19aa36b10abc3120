"""Persistence layer: records, repository protocols and implementations.

``geolayers.db.database`` holds the protocols and the PostgreSQL
repositories; ``geolayers.db.memory`` implements the same protocols in
process memory for tests and local development.

Example:
    >>> from geolayers.db import database
    >>> repositories = database.get_repositories(settings)
    >>> repositories.jobs.claim_next("worker-1")
"""
