"""Surface scan pipeline for creator video product-placement opportunities."""

__version__ = "0.1.0"
