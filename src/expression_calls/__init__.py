"""Expression call merging, ontology propagation and summary resolution."""

__version__ = "0.1.0"
