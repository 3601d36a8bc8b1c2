"""
IdePix OLCI S3-SNOW pixel classification pipeline.

Packages:
- datamodel: raster products, bands, flag codings and the product merger
- expression: band-math expressions over product bands and flags
- analysis: stages, stage registry, pipeline graph and assembly
- io: source product preconditions
"""

__version__ = "1.0.0"
