"""htsmerge - merge and maintain high-resolution texture cache (.hts) files"""

__version__ = "0.1.0"
