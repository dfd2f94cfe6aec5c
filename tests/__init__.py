"""
Test Suite for Build Observer

- status classification
- log synchronizer sessions and scheduling
- session registry and observation surfaces
- build service client and dashboard API
"""
