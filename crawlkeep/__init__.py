"""
Resumable Web Crawler

A crash-tolerant crawler that snapshots its progress to disk and reconciles
it into a persistent store, so a crawl can be stopped and resumed at will.
"""

__version__ = "1.0.0"
__description__ = "A resumable, crash-tolerant web crawler with snapshot-based persistence"
