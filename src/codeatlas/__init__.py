"""
CodeAtlas Polyglot Code Knowledge Base

Turns a selection of Python, TypeScript/JavaScript, Go and Java sources
into a vector-searchable knowledge base through five sequential stages:
parse, analyze dependencies, enrich with an LLM, vectorize and index.
"""

__version__ = "0.1.0"
__author__ = "CodeAtlas Team"
__description__ = "Polyglot code knowledge-base pipeline engine"

from .pipeline.manager import PipelineManager
from .pipeline.run import PipelineInstance

__all__ = ["PipelineInstance", "PipelineManager"]
