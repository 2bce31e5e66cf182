"""Pipelines package for idedocs.

Provides crawling, parsing, chunking and ingestion orchestration.
"""

from .chunker import DocumentChunker, TiktokenTokenizer, WhitespaceTokenizer, chunk_document
from .crawler import Crawler, CrawlStats
from .parser import DocumentParser, ParsedDocument, detect_version
from .policy import RobotsPolicy
from .url_normalizer import URLNormalizer

__all__ = [
    # Crawler
    'Crawler',
    'CrawlStats',

    # Parsing and policy
    'DocumentParser',
    'ParsedDocument',
    'detect_version',
    'RobotsPolicy',
    'URLNormalizer',

    # Chunker
    'DocumentChunker',
    'TiktokenTokenizer',
    'WhitespaceTokenizer',
    'chunk_document'
]
