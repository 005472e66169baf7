#!/usr/bin/env python3
"""
SSH Rails runner MCP server.

- Snippets are prepared (saved locally with a declared readOnly/mutate intent) before they can run
- Execution goes through the path matching the declared intent
- Code runs remotely with rails runner; output is cut out of the transcript with single-use markers
- Session logs in .ssh-cache
"""

from ssh_rails_runner.main import main

if __name__ == "__main__":
    main()
