import sys

from mcp_email_gateway.cli import main

sys.exit(main())
