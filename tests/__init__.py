"""SQL source test suite.

Database access is replaced by tests/fakes.py, which evaluates the generated
incremental queries against in-memory rows.
"""
