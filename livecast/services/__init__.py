"""Application services: live analysis via the commentary model."""
from livecast.services.analysis import AnalysisEvent, AnalysisTrigger, parse_analysis_response
from livecast.services.llm_client import ChatCompletionClient

__all__ = ["AnalysisEvent", "AnalysisTrigger", "ChatCompletionClient", "parse_analysis_response"]
