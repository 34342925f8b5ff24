#!/usr/bin/env python3
"""
n8n Stack Manager - Unified Entry Point

Backup, restore and ordered startup for the self-hosted n8n stack
(Supabase, n8n, Nginx Proxy Manager, Cloudflared, Portainer).

Usage:
  ./stack.py backup                  # choose services interactively
  ./stack.py restore n8n --yes       # restore without prompting
  ./stack.py start                   # start everything in order
  ./stack.py list                    # show available backups
  ./stack.py supabase db-only        # stop everything but Postgres
"""
import sys
from pathlib import Path

# Allow running from a checkout without installing
sys.path.insert(0, str(Path(__file__).resolve().parent))

from stackmgr.manager import main


if __name__ == "__main__":
    sys.exit(main())
