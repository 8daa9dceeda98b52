"""isobatch command line interface (``isobatch``)."""
