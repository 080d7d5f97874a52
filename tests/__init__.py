"""
Test Suite for devflow

This package contains tests for the workflow assistant components:
- Event pipeline, pattern matchers, milestones and suggestions
- Decision agent, safety validator and action executor (real git repos)
- Feedback store, learning engine and feedback handlers
- Configuration, monitor manager and the FastAPI tool facade
"""
