"""
DocGraph Reasoning System

Answers natural-language questions over a user's private document corpus by
combining vector similarity search, a knowledge graph of extracted entities and
relationships, and an LLM synthesizer with iterative refinement.
"""

__version__ = "1.0.0"
__author__ = "DocGraph Team"
