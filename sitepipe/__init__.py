"""Sitepipe static-site asset pipeline.

This package wires external tools into a small build system for static sites:
Jinja2 templated markup is rendered, validated and beautified, stylesheets are
inlined, linted and prefixed, and images are optimized. A development server
watches the source tree, re-runs the affected pipeline and pushes a reload
signal to connected browsers.

The main entry point is the CLI module, which runs the full build, the
stylesheet verification pass, and the watch/serve loop.

Architecture:
- SourceTree enumerates buildable files.
- TransformStage runs an ordered list of named steps over one file.
- PipelineRegistry maps each file category to its BuildTask.
- BuildOrchestrator runs tasks and writes outputs.
- Watcher serializes rebuilds per binding and notifies live clients.
"""

__all__ = ["__version__"]
__version__ = "0.1.0"
