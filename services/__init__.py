"""
Services module for the Storyboard Studio engine.
"""
from .engine import EngineConfig, GridResult, OrchestrationEngine, RoleModels

__all__ = ["OrchestrationEngine", "EngineConfig", "RoleModels", "GridResult"]
