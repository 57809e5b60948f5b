"""
Residence Manager

Data layer for the residential building management screens: paginated,
enriched and searchable views over the building REST API.
"""

__version__ = "0.3.0"
