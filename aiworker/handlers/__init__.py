"""Work item handlers driven by the scheduler."""

from __future__ import annotations

from .clarification import AnalysisResult, ClarificationHandler
from .feedback import FeedbackHandler

__all__ = ["AnalysisResult", "ClarificationHandler", "FeedbackHandler"]
