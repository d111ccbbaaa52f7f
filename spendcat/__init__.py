"""
Spending category classifier.

Classifies merchant / store names into spending categories through a tiered
cascade (learned mappings, vector similarity, keyword rules) and a batch
pipeline that groups similar names before asking a classification oracle.
"""

__version__ = "0.1.0"
