"""Core primitives shared by the metadata and runtime layers."""
