"""annot-pipeline: annotation of bacterial genomes, plasmids and MAGs."""

__version__ = "0.1.0"
