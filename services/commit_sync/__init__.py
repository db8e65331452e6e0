"""
Commit Sync Service.

This service is responsible for:
- Importing commit history of tracked GitHub repositories
- Deduplicating commit authors across repositories
- Attributing commits between forks and their parents
- Tracking repository renames and availability
"""

__version__ = "1.0.0"
__author__ = "CommitSync Team"
__description__ = "GitHub commit history synchronization service"
