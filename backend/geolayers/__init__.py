"""GeoLayers: geospatial layer ingestion and serving backend.

This package ingests heterogeneous geospatial sources (WMS endpoints, WFS
feeds, GeoTIFF/GeoPDF rasters, zipped shapefiles and GeoJSON), normalizes
them to EPSG:3857 (Web Mercator) with the GDAL/OGR toolchain, and serves
them back as:

- XYZ PNG tiles, pre-generated for rasters and proxied with a disk cache
  for WMS layers;
- GeoJSON documents with an approximate bbox pre-filter for vector layers;
- offline MBTiles packages, built asynchronously and downloaded once ready.

Ingestion and package builds run in a separate worker process
(``python -m geolayers.worker``) that shares the job queue with the API.
"""
