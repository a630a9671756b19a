from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    APP_NAME: str = "crudspec"

    CURSOR_ALIAS: str = "cursor_select"
    CURSOR_CHAIN_MODE: str = "keyset"  # keyset | strict_prefix
    COMPUTED_COLUMN_PREFIX: str = "cql"

    SQL_PARAMSTYLE: str = "qmark"  # qmark | format | numeric | named
    DEFAULT_PAGE_LIMIT: int = 50
    MAX_PAGE_LIMIT: int = 1000

    # Extra SQL words never treated as a column by the WHERE sanitizer
    EXTRA_SQL_KEYWORDS: str = ""

    @property
    def extra_sql_keywords_list(self) -> List[str]:
        return [o.strip().lower() for o in self.EXTRA_SQL_KEYWORDS.split(",") if o.strip()]

settings = Settings()
