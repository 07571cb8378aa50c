"""
Core utilities package.

This package MUST NOT:
- import training, model or inference code
- depend on torch

It is safe for:
- logging
- config
- exception types
- the LabeledSample record
"""
