"""Flow synthesis and export."""

from eem.flow.export import render
from eem.flow.synthesizer import FlowSynthesizer, build_flow

__all__ = ["FlowSynthesizer", "build_flow", "render"]
