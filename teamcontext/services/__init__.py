"""
Services — External tools (git, gh) and the knowledge sync protocol
"""

from .git import GitIntegration, GitResult
from .sync import KnowledgeSync, SyncReport, SyncStepResult
