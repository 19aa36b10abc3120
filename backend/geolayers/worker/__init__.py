"""Background ingestion and packaging workers.

Run with ``python -m geolayers.worker``; see ``geolayers.worker.dispatcher``
for the per-job routing.
"""
