"""Crawl runs over content sources."""

from __future__ import annotations

from .runner import CrawlRequest, CrawlRunner, CrawlSummary, SourceOutcome

__all__ = ["CrawlRequest", "CrawlRunner", "CrawlSummary", "SourceOutcome"]
