"""lxcforge CLI: Typer-based command-line interface.

Provides the ``lxcforge`` command with subcommands for building, packaging
and validating templates, inspecting the image cache and showing the
resolved configuration.

All output uses Rich for formatted terminal display.
"""
