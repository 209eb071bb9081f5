"""
Command line construction for the rx process.
"""

from typing import List, Optional, Sequence


def build_command(
    args: Sequence[str],
    program: str = "rx.py",
    python: str = "python3",
    niceness: Optional[int] = -15,
) -> List[str]:
    """
    Build the argv used to launch rx.

    Python scripts are run through the configured interpreter; anything else
    is executed directly. When niceness is set the whole command is wrapped
    in `nice -n <niceness>`.

    Args:
        args: Arguments appended after the program
        program: rx program (path relative to the rx working directory)
        python: Interpreter for .py programs
        niceness: Scheduling priority adjustment, or None to skip `nice`

    Returns:
        Complete argv list
    """
    if program.endswith(".py"):
        cmd = [python, program]
    elif "/" in program:
        cmd = [program]
    else:
        cmd = [f"./{program}"]
    cmd.extend(str(a) for a in args)

    if niceness is not None:
        cmd = ["nice", "-n", str(niceness)] + cmd
    return cmd
