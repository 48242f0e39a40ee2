"""Prompt templates for AI-backed steps."""

from voc_loop.prompts.cluster_prompts import (
    CLUSTERING_SYSTEM_PROMPT,
    build_clustering_system_prompt,
    build_clustering_user_prompt,
)

__all__ = [
    "CLUSTERING_SYSTEM_PROMPT",
    "build_clustering_system_prompt",
    "build_clustering_user_prompt",
]
