from .base import CrawlResult, Crawler, DataSourceProvider, ProgramSource, RawProgram
from .crawler import HttpCrawler
from .nps import NpsDataSource
from .program_source import HttpProgramSource, ProgramSourceError

__all__ = [
    "CrawlResult",
    "Crawler",
    "DataSourceProvider",
    "HttpCrawler",
    "HttpProgramSource",
    "NpsDataSource",
    "ProgramSource",
    "ProgramSourceError",
    "RawProgram",
]
