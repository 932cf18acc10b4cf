"""
Vectra - prompt engineering backend.

This package contains:
- prompt_engine: the prompt compiler, transform pipeline, Gemini Gems and Character Packs.
- catalog: bundled presets and the file-backed store for catalog and user data.
- config_service: configuration loading, overrides and migrations.
- web: the JSON HTTP API that fronts the compiler.
"""
