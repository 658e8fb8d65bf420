"""lxcforge terminal output: Rich renderers for build and validation results.

Modules
-------
renderer
    ``BuildRenderer`` turns stage outcomes, artifacts and validation
    reports into Rich renderables for terminal display.
"""
