"""Collaborators the executor reaches through narrow interfaces."""

from automode.services.context_manager import ContextManager, FileContextManager
from automode.services.feature_loader import FeatureLoader, FileFeatureLoader
from automode.services.feature_tools import FeatureStatusTool, create_feature_tools_server

__all__ = [
    "ContextManager",
    "FeatureLoader",
    "FeatureStatusTool",
    "FileContextManager",
    "FileFeatureLoader",
    "create_feature_tools_server",
]
