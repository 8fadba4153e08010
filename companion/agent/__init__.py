"""Agent package for the LangGraph turn pipeline."""
from companion.agent.graph import create_preparation_graph, create_finalization_graph

__all__ = ["create_preparation_graph", "create_finalization_graph"]
