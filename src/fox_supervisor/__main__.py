"""fox-supervisor 入口点。

支持: python -m fox_supervisor
"""

from .app import main

if __name__ == "__main__":
    main()
