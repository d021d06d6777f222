"""Concrete collaborators: OpenAI generation and SQL persistence."""

from iris_workflow.clients.openai_generation import OpenAIGenerationClient
from iris_workflow.clients.sql_persistence import SqlPersistenceStore

__all__ = ["OpenAIGenerationClient", "SqlPersistenceStore"]
