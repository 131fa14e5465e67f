"""
Project provisioning job.

A multi-step handler that reports progress stages and classifies its
failures into a fixed taxonomy the worker can act on.
"""
