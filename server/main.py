from __future__ import annotations

from bellserver.cli import main

if __name__ == "__main__":
    main()
