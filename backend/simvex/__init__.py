"""Application package for the Simvex study backend.

This package exposes the repository contract, its storage backends and
the FastAPI application that sits on top of them. Individual modules
contain the concrete implementations and documentation.
"""
