from .base import Analyzer, EnrichmentResult, FitResult, PrescreenVerdict, RefundAnalysis
from .claude_analyzer import AnalyzerResponseError, ClaudeAnalyzer

__all__ = [
    "Analyzer",
    "AnalyzerResponseError",
    "ClaudeAnalyzer",
    "EnrichmentResult",
    "FitResult",
    "PrescreenVerdict",
    "RefundAnalysis",
]
