"""
Database dump source.

Produces the SQL dump of the site's MySQL database by running ``mysqldump``.
The password is handed to the child process through ``MYSQL_PWD`` so it never
appears in the process list.
"""

import logging
import os
import subprocess
from typing import List, Optional

from .errors import ProducerError

logger = logging.getLogger(__name__)


class MySQLDumpSource:
    """Writes a single SQL dump file into a directory."""

    def __init__(
        self,
        database: str,
        username: str,
        password: Optional[str] = None,
        hostname: str = 'localhost',
        port: int = 3306,
        filename: str = 'wordpress.sql',
        timeout: int = 600,
        mysqldump_bin: str = 'mysqldump'
    ):
        self.database = database
        self.username = username
        self.password = password
        self.hostname = hostname
        self.port = port
        self.filename = filename
        self.timeout = timeout
        self.mysqldump_bin = mysqldump_bin

    def build_command(self, result_file: str) -> List[str]:
        return [
            self.mysqldump_bin,
            f'--host={self.hostname}',
            f'--port={self.port}',
            f'--user={self.username}',
            '--single-transaction',
            '--routines',
            '--triggers',
            '--no-tablespaces',
            f'--result-file={result_file}',
            self.database,
        ]

    def dump(self, output_dir: str) -> str:
        """
        Dump the database into ``output_dir``.

        Args:
            output_dir: Directory to write the dump into

        Returns:
            Filename of the dump (relative to output_dir)

        Raises:
            ProducerError: If mysqldump is missing, times out or fails
        """
        result_file = os.path.join(output_dir, self.filename)

        env = dict(os.environ)
        if self.password:
            env['MYSQL_PWD'] = self.password

        logger.info(f"Dumping database {self.database} from {self.hostname}:{self.port}")

        try:
            result = subprocess.run(
                self.build_command(result_file),
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env=env,
            )
        except FileNotFoundError as e:
            raise ProducerError(f"mysqldump executable not found: {self.mysqldump_bin}") from e
        except subprocess.TimeoutExpired as e:
            raise ProducerError(f"mysqldump timed out after {self.timeout}s") from e

        if result.returncode != 0:
            error_msg = result.stderr.strip() or f"exit status {result.returncode}"
            raise ProducerError(f"mysqldump failed: {error_msg}")

        if not os.path.exists(result_file):
            raise ProducerError(f"mysqldump produced no output: {result_file}")

        logger.info(f"Database dump saved to {result_file}")
        return self.filename
