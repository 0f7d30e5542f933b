"""VATPlayback Archivist: records the VATSIM network data feed to disk."""

__version__ = "0.1.0"

PRODUCT_NAME = "VATPlayback Archivist"
COPYRIGHT = "Copyright (C) 2025 DIY Labs"
LICENSE = "Licensed under GNU GPL V3."
