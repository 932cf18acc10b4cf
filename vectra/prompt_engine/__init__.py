"""Prompt compiler: catalog snapshot, compile pipeline, transforms and presets."""

from .catalog import CatalogSnapshot
from .compiler import CompileContext, CompileError, CompileOptions, compile_prompt, generate_seed
from .models import Block, Blueprint, CompileInput, CompileResult, Filter, LoraActivation, Profile
from .services import PromptCompiler, options_from_config

__all__ = [
    "Block",
    "Blueprint",
    "CatalogSnapshot",
    "CompileContext",
    "CompileError",
    "CompileInput",
    "CompileOptions",
    "CompileResult",
    "Filter",
    "LoraActivation",
    "Profile",
    "PromptCompiler",
    "compile_prompt",
    "generate_seed",
    "options_from_config",
]
