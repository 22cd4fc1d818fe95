"""
provisio/utils/state_storage.py

Defines storage classes for reading/writing serialized provisio state:
  - MemoryStorage
  - LocalFileStorage
  - MinioStorage

All classes accept a StateRef referencing (project, workspace). For a
non-existent state, read_text returns None and load starts from an empty State.
"""

from __future__ import annotations

import io
import os
import shutil
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

import aiofiles
from minio import Minio
from minio.error import S3Error

from provisio.models.settings import EngineSettings
from provisio.models.state import State, StateRef

logger = logging.getLogger(__name__)


class StateStorage(ABC):
    """Abstract base class for reading/writing serialized state."""

    def __init__(self, ref: StateRef) -> None:
        """
        Initialize a StateStorage.

        Args:
            ref (StateRef): Identifies the project + workspace.
        """
        self.ref = ref

    @abstractmethod
    async def read_text(self) -> Optional[str]:
        """
        Read the stored state document for this (project, workspace).

        Returns:
            Optional[str]: The JSON text if it exists, or None if no state is found.
        """
        pass

    @abstractmethod
    async def write_text(self, text: str) -> None:
        """
        Write or overwrite the state document for this (project, workspace).

        Args:
            text (str): The JSON text to store.
        """
        pass

    async def load(self) -> State:
        """Read and parse the state, or return a fresh empty State."""
        text = await self.read_text()
        if not text:
            return State()
        return State.model_validate_json(text)

    async def save(self, state: State) -> None:
        """Bump the serial and persist `state`."""
        state.serial += 1
        await self.write_text(state.model_dump_json(indent=2))


class MemoryStorage(StateStorage):
    """
    Keeps the state document in memory only (dry runs and tests).
    """

    def __init__(self, ref: Optional[StateRef] = None, text: Optional[str] = None) -> None:
        super().__init__(ref or StateRef(project="memory"))
        self.text = text
        self.writes = 0

    async def read_text(self) -> Optional[str]:
        return self.text

    async def write_text(self, text: str) -> None:
        self.text = text
        self.writes += 1


class LocalFileStorage(StateStorage):
    """
    Stores state under '<directory>/<mapped_project>.<workspace>.json'.

    Writes go to a temporary file that atomically replaces the previous state;
    the previous state is kept next to it as '.backup'.
    """

    def __init__(self, ref: StateRef, directory: str) -> None:
        super().__init__(ref)
        self.directory = directory

    @property
    def path(self) -> str:
        return os.path.join(self.directory, f"{self.ref.flat_name()}.json")

    async def read_text(self) -> Optional[str]:
        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                return await f.read()
        except FileNotFoundError:
            return None

    async def write_text(self, text: str) -> None:
        os.makedirs(self.directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(text)
            await f.flush()
        if os.path.exists(self.path):
            shutil.copy2(self.path, f"{self.path}.backup")
        os.replace(tmp_path, self.path)


class MinioStorage(StateStorage):
    """
    Stores state in a Minio bucket => 'provisio-state/<mapped_project>/<workspace>.json'.
    If no object is found, returns None to indicate no existing state.
    """

    def __init__(self, ref: StateRef, bucket_name: str, minio_client: Minio) -> None:
        super().__init__(ref)
        self.bucket_name = bucket_name
        self._minio_client = minio_client

    def _object_key(self) -> str:
        mapped_project = self.ref.project.replace("/", ".")
        return f"provisio-state/{mapped_project}/{self.ref.workspace}.json"

    async def read_text(self) -> Optional[str]:
        client = self._minio_client

        def do_get_and_read() -> Optional[str]:
            response = None
            try:
                response = client.get_object(self.bucket_name, self._object_key())
                data_b = response.read()
                return data_b.decode("utf-8")
            except S3Error as ex:
                # If object or bucket not found => return None
                if ex.code in ("NoSuchKey", "NoSuchObject", "NoSuchBucket"):
                    return None
                raise
            finally:
                if response is not None:
                    response.close()
                    response.release_conn()

        return await asyncio.to_thread(do_get_and_read)

    async def write_text(self, text: str) -> None:
        client = self._minio_client
        data_bytes = text.encode("utf-8")
        length = len(data_bytes)

        def do_put_object() -> None:
            if not client.bucket_exists(self.bucket_name):
                client.make_bucket(self.bucket_name)
            stream = io.BytesIO(data_bytes)
            client.put_object(
                bucket_name=self.bucket_name,
                object_name=self._object_key(),
                data=stream,
                length=length,
                content_type="application/json",
            )

        await asyncio.to_thread(do_put_object)


def get_minio_client(settings: EngineSettings) -> Minio:
    """Build a Minio client from engine settings."""
    if not settings.minio_endpoint:
        raise ValueError("minio_endpoint is not configured.")
    return Minio(
        settings.minio_endpoint,
        access_key=settings.minio_access_key,
        secret_key=settings.minio_secret_key,
        secure=settings.minio_secure,
    )


def storage_from_settings(ref: StateRef, settings: EngineSettings) -> StateStorage:
    """Pick the storage backend named by `settings.state_backend`."""
    if settings.state_backend == "minio":
        logger.debug("Using MinIO state backend at %s", settings.minio_endpoint)
        return MinioStorage(
            ref=ref,
            bucket_name=settings.minio_bucket,
            minio_client=get_minio_client(settings),
        )
    return LocalFileStorage(ref=ref, directory=settings.state_path)
