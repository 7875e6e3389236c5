import copy
import logging
import os
from typing import Any, Callable, Optional, Union

import asyncpg

AUTOCREATE = "true" in os.getenv("AUTOCREATE_TABLES", "false").lower()
MAX_RESP_LOG_LEN = int(os.getenv("MAX_RESP_LOG_LEN", "256"))
LOG_LEVEL_DEBUG = bool(os.getenv("DEBUG", None))


def get_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG if LOG_LEVEL_DEBUG else logging.INFO)
    if not logger.hasHandlers():
        sh = logging.StreamHandler()
        sh.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        logger.addHandler(sh)
    return logger


pools: list[asyncpg.Pool] = []


async def close_pools() -> None:
    for pool in pools:
        try:
            await pool.close()
        except (asyncpg.PostgresError, asyncpg.InternalClientError) as e:
            logging.error(e)
    pools.clear()


class PGExpressions(dict):
    def __init__(self, table: str = "", **kwargs: str) -> None:
        self.table = table
        self.logger = get_logger(f"{self.table}_expressions")
        super().__init__(**kwargs)
        if "create_table" not in self:
            self.logger.warning(f"'create_table' not defined for {self.table}")

    def get_query(self, key: str) -> str:
        self.logger.debug(f"self.get invoked for {key}")
        return dict.__getitem__(self, key).replace("{self.table}", self.table)

    def with_table(self, table: str) -> "PGExpressions":
        "same statements against a differently named table"
        return PGExpressions(table, **self)


class PGInterface:
    """Implements an abstraction for async PG requests:
    - provided a map of method names to SQL query strings
    - an optional database URI ( defaults to "")

    Passing a dict instead of a URI runs in fake mode: each named query pops
    its next canned response from the dict and the call is recorded in
    `invocations`."""

    def __init__(
        self, query_strings: PGExpressions, database: Union[str, dict] = ""
    ) -> None:
        self.database: Union[str, dict] = copy.deepcopy(
            database
        )  # either a db uri or canned resps
        self.queries = query_strings
        self.table = self.queries.table
        self.MAX_RESP_LOG_LEN = MAX_RESP_LOG_LEN
        self.pool: Optional[asyncpg.Pool] = None
        self.invocations: list[dict] = []
        self.logger = get_logger(
            f'{self.table}{"_fake" if isinstance(database, dict) else ""}_interface'
        )

    async def connect_pg(self) -> None:
        self.pool = await asyncpg.create_pool(self.database)
        pools.append(self.pool)

    async def execute(
        self,
        qstring: str,
        *args: Any,
    ) -> Optional[list[asyncpg.Record]]:
        """Invoke the asyncpg connection's `fetch` given a provided query string and set of arguments"""
        timeout: int = 180
        if not self.pool and not isinstance(self.database, dict):
            await self.connect_pg()
        if self.pool:
            async with self.pool.acquire() as connection:
                return await connection.fetch(qstring, *args, timeout=timeout)
        return None

    def truncate(self, thing: str) -> str:
        """Logging helper. Truncates and formats."""
        if len(thing) > self.MAX_RESP_LOG_LEN:
            return (
                f"{thing[:self.MAX_RESP_LOG_LEN]}..."
                f"[{len(thing)-self.MAX_RESP_LOG_LEN} omitted]"
            )
        return thing

    def __getattribute__(self, key: str) -> Callable[..., Any]:
        """Implicitly define methods on this class for every statement in self.queries.
        Statements with positional parameters ($1, $2...) take them as arguments."""
        try:
            return object.__getattribute__(self, key)
        except AttributeError:
            pass
        try:
            statement = self.queries.get_query(key)
        except KeyError as e:
            raise ValueError(f"No statement of name {key} found!") from e
        if isinstance(self.database, dict):
            canned = self.database.get(key, [[None]])
            canned_response = canned.pop(0) if canned else [None]
            if key in self.database and not self.database.get(key, []):
                self.database.pop(key)

            async def return_canned(*args: Any, **kwargs: Any) -> Any:
                self.invocations.append({key: (args, kwargs)})
                if callable(canned_response):
                    resp = canned_response(*args, **kwargs)
                else:
                    resp = canned_response
                short_strresp = self.truncate(f"{resp}")
                self.logger.info(
                    f"returning `{short_strresp}` for expression: "
                    f"`{key}` eval'd with `{args}` & `{kwargs}`"
                )
                return resp

            return return_canned
        executer = self.execute
        if "$1" in statement:

            async def executer_with_args(*args: Any) -> Any:
                """Closure over 'statement' in local state for application to arguments."""
                resp = await executer(statement, *args)
                short_strresp = self.truncate(f"{resp}")
                short_args = self.truncate(str(args))
                self.logger.debug(f"{statement} {short_args} -> {short_strresp}")
                return resp

            return executer_with_args

        async def executer_without_args() -> Any:
            """Closure over local state for executer without arguments."""
            return await executer(statement)

        return executer_without_args
