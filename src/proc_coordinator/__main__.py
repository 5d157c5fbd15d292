"""Proc Coordinator 入口点。

支持: python -m proc_coordinator
"""

from .app import main

if __name__ == "__main__":
    main()
