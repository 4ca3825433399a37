"""Pipeline script language: parsing, values, transforms and execution."""

from eem.script.buffer import EventBuffer
from eem.script.interpreter import ScriptInterpreter
from eem.script.parser import parse, validate_script
from eem.script.processor import ScriptProcessor
from eem.script.transforms import default_transforms

__all__ = [
    "EventBuffer",
    "ScriptInterpreter",
    "ScriptProcessor",
    "default_transforms",
    "parse",
    "validate_script",
]
