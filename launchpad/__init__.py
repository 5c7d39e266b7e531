"""
Launchpad - a remote deploy-and-run panel for a single supervised program.

Fetches user code from an uploaded archive or a git repository, optionally
installs its dependencies, runs it as one supervised child process and
streams its output to connected operators, who can type input back into it.
A companion file manager exposes the sandboxed workspace.
"""

__version__ = "0.1.0"
