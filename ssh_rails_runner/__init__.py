"""Prepare-then-execute runner for Ruby snippets on a remote Rails host over SSH."""

from ssh_rails_runner.config import SERVER_VERSION as __version__
