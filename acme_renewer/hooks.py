"""
Module running the post renewal hook
"""
import logging
import os
import shlex
import subprocess

DEFAULT_HOOK_TIMEOUT = 120.0

logger = logging.getLogger(__name__)  # pylint: disable=invalid-name


class HookError(Exception):
    """The renewal hook failed"""


def is_interactive(stream):
    """Returns True if stream is attached to a terminal"""
    try:
        return stream.isatty()
    except (AttributeError, ValueError):  # replaced or closed stream
        return False


class HookRunner:
    """Runs hook commands exposing the renewal metadata as environment variables"""
    def __init__(self, timeout=DEFAULT_HOOK_TIMEOUT):
        self.timeout = timeout

    def run(self, command, metadata):
        """Runs command with the current environment extended with metadata"""
        if not command:
            return

        cmd = shlex.split(command)
        env = dict(os.environ)
        env.update(metadata)

        logger.info("Running hook %s", cmd)
        try:
            result = subprocess.run(cmd,
                                    env=env,
                                    stdout=subprocess.PIPE,
                                    stderr=subprocess.STDOUT,
                                    timeout=self.timeout,
                                    check=True)
        except subprocess.CalledProcessError as cpe:
            logger.error("Hook output: %s", cpe.output.decode('utf-8', errors='replace'))
            raise HookError(f'Hook {cmd} returned {cpe.returncode}') from cpe
        except subprocess.TimeoutExpired as timeout_error:
            raise HookError(f'Hook {cmd} did not finish in {self.timeout} seconds') from timeout_error
        except OSError as os_error:
            raise HookError(f'Unable to run hook {cmd}') from os_error

        if result.stdout:
            logger.info("Hook output: %s", result.stdout.decode('utf-8', errors='replace'))
