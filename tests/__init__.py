"""
Hypermatch Test Suite

This package contains tests for the hypergraph keypoint matching system.

Structure:
- unit/: Unit tests for individual components (triangulation, similarities,
  hyperedge matching, point matching, features, pipeline/config/CLI)
"""
