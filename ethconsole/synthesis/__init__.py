"""Interface synthesis: ABI recovery, proxy following, identity, generation."""

from ethconsole.synthesis.errors import GenerationError, IdentityProbeFailure, SynthesisError
from ethconsole.synthesis.generation import SurfaceCache, SurfaceGenerator
from ethconsole.synthesis.loaders import (
    EtherscanAbiLoader,
    MultiAbiLoader,
    SignatureLookup,
    SourcifyAbiLoader,
)
from ethconsole.synthesis.pipeline import InterfaceResolver, InterfaceSynthesisPipeline

__all__ = [
    "EtherscanAbiLoader",
    "GenerationError",
    "IdentityProbeFailure",
    "InterfaceResolver",
    "InterfaceSynthesisPipeline",
    "MultiAbiLoader",
    "SignatureLookup",
    "SourcifyAbiLoader",
    "SurfaceCache",
    "SurfaceGenerator",
    "SynthesisError",
]
