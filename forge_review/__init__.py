"""
Forge Review

AI-assisted pull request review for self-hosted Git forges. Receives forge
webhooks, tracks which commits were already reviewed, and posts structured
review comments back through the forge's review API.
"""

__version__ = "0.3.0"
__author__ = "Forge Review Team"
