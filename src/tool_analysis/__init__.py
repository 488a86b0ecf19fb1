"""Read/write classification of discovered tools."""

from tool_analysis.download import DownloadProgressThrottle, normalize_pull_chunk
from tool_analysis.heuristics import classify
from tool_analysis.inference import InferenceClient, OllamaClient, parse_analysis
from tool_analysis.pipeline import AnalysisPipeline

__all__ = [
    "AnalysisPipeline",
    "DownloadProgressThrottle",
    "InferenceClient",
    "OllamaClient",
    "classify",
    "normalize_pull_chunk",
    "parse_analysis",
]
