"""
Web crawler core components.
"""

from .url_frontier import URLFrontier, FilterResult, normalize_url, get_domain, dedupe, exclude_known
from .fetcher import PageFetcher, HttpFetcher, SessionFetcher, FetchResult, FetchError, create_fetcher
from .parser import ContentParser, ExtractedLink
from .robots import RobotsCache
from .worker import CrawlWorker, WorkerState, WorkerReport, StopSignal
from .scheduler import CrawlerScheduler

__all__ = [
    'URLFrontier', 'FilterResult', 'normalize_url', 'get_domain', 'dedupe', 'exclude_known',
    'PageFetcher', 'HttpFetcher', 'SessionFetcher', 'FetchResult', 'FetchError', 'create_fetcher',
    'ContentParser', 'ExtractedLink',
    'RobotsCache',
    'CrawlWorker', 'WorkerState', 'WorkerReport', 'StopSignal',
    'CrawlerScheduler'
]
