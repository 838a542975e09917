"""
Command-line interface for the Viral Consensus Pipeline.
"""
