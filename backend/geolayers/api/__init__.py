"""API router subpackage.

Each module exposes an APIRouter for one surface of the service:

Submodules:
    - layers: Register, list and describe layers.
    - tiles: XYZ PNG tiles and GeoJSON features of ready layers.
    - offline: Offline MBTiles package requests, status and download.
    - dependencies: Resolve services from ``app.state``.
    - schemas: Request bodies.
"""
