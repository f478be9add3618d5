"""Collaborators the pipelines depend on, bundled for injection.

FastAPI routes receive an EngineDeps through api.deps.provide_engine_deps;
tests override it with fakes.
"""

from __future__ import annotations

from dataclasses import dataclass

from expert_engine.services.audit import AuditLogger, get_audit_logger
from expert_engine.services.experts import ExpertStore, get_expert_store
from expert_engine.services.llm import LLMProvider, get_llm_provider
from expert_engine.services.retrieval import Retriever, get_retriever


@dataclass
class EngineDeps:
    llm: LLMProvider
    retriever: Retriever
    experts: ExpertStore
    audit: AuditLogger


def get_engine_deps() -> EngineDeps:
    """
    Build deps from the process-wide singletons.

    Raises:
        ValueError: A provider is misconfigured (unknown name, missing key).
    """
    return EngineDeps(
        llm=get_llm_provider(),
        retriever=get_retriever(),
        experts=get_expert_store(),
        audit=get_audit_logger(),
    )
