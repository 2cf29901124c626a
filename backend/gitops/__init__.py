"""
Git operations module for git-managed stacks.

This module provides:
- GitService: Remote commit lookup and shallow working tree export
- get_git_service(): Singleton accessor
"""
from gitops.git_service import (
    GitService,
    GitNotAvailableError,
    GitCommandError,
    get_git_service,
)

__all__ = [
    'GitService',
    'GitNotAvailableError',
    'GitCommandError',
    'get_git_service',
]
