"""
CLI entry point, when used as a module: `python -m crscale`.

Useful for debugging in the IDEs (use the start-mode "Module", module "crscale").
"""
from crscale import cli

if __name__ == '__main__':
    cli.main()
