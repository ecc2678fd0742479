"""Package entry point for ``python -m call_audit``.

WHY: Operators run audits and reruns as ``python -m call_audit audit case.json``
without installing a console script.

HOW: Delegates to the CLI's main() function.
"""

from call_audit.cli import main

if __name__ == "__main__":
    main()
