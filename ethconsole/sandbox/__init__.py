"""Sandbox module."""

from .injector import BridgedProvider, SandboxContext, SandboxInjector

__all__ = ["BridgedProvider", "SandboxContext", "SandboxInjector"]
