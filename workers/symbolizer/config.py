"""
Symbolizer configuration
"""
import os
from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Symbolizer settings"""

    # Mode directive used when the caller does not pass one
    SYMBOLIZER_MODE: str = ""

    # Local binaries
    SYMBOLIZER_BINARY_PATH: str = ""

    # Remote symbol service
    SYMBOLIZER_REMOTE_TIMEOUT: float = 30.0  # seconds

    # Mangled-name decoder
    SYMBOLIZER_CXXFILT: str = "c++filt"
    SYMBOLIZER_CXXFILT_TIMEOUT: float = 30.0  # seconds

    @property
    def binary_search_dirs(self) -> List[str]:
        """Search directories from SYMBOLIZER_BINARY_PATH, empty entries dropped."""
        return [d for d in self.SYMBOLIZER_BINARY_PATH.split(os.pathsep) if d]

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
