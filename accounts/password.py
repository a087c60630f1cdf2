import asyncio
from abc import ABC, abstractmethod
from getpass import getpass
from typing import Optional


class PasswordProvider(ABC):
    """Where pipelines get a password from. None means the user cancelled."""

    @abstractmethod
    async def request(self, prompt: str) -> Optional[str]: ...


class FixedPasswordProvider(PasswordProvider):
    """Always answers with the same password. For scripts and tests."""

    def __init__(self, password: Optional[str]):
        self.password = password
        self.prompts = []

    async def request(self, prompt: str) -> Optional[str]:
        self.prompts.append(prompt)
        return self.password


class GetpassPasswordProvider(PasswordProvider):
    """Terminal prompt. getpass blocks, so it runs in the default executor."""

    async def request(self, prompt: str) -> Optional[str]:
        loop = asyncio.get_running_loop()
        try:
            password = await loop.run_in_executor(None, getpass, f"{prompt}: ")
        except (EOFError, KeyboardInterrupt):
            return None
        if not password.strip():
            return None
        return password
