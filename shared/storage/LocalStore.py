"""Per-user on-disk state: mail packages, scanned pages and transient OCR texts.

Layout below the storage root:

    users/{user_id}/mail/packages.json       JSON array of MailPackage
    users/{user_id}/mail/ocr_data.json       JSON array of MailPackageOcrData
    users/{user_id}/mail/{timestamp}_{n}.jpg one file per scanned page

Every write rewrites the whole file through a temp file and an atomic rename,
serialised by one asyncio lock per store.
"""

import asyncio
import json
import re
import shutil
import uuid
from pathlib import Path, PurePosixPath
from typing import Callable

from PIL import Image
from pydantic import ValidationError

from shared.helper.HelperConfig import HelperConfig
from shared.models.errors import StoreCorruptedError
from shared.models.mail import MailPackage, MailPackageOcrData

ANONYMOUS_USER = "anonymous"
PACKAGES_FILENAME = "packages.json"
OCR_DATA_FILENAME = "ocr_data.json"
JPEG_QUALITY = 80

_USER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.@-]+$")


def scan_filename(timestamp: str, sequence: int) -> str:
    """File name of a scanned page; sequence is 1-based."""
    return f"{timestamp}_{sequence}.jpg"


class LocalStore:
    """The only persistence layer. One instance serves exactly one user partition."""

    def __init__(
        self,
        helper_config: HelperConfig,
        user_id: str | None = None,
        root_dir: Path | None = None,
        strict: bool | None = None,
    ) -> None:
        self.logging = helper_config.get_logger()
        self.root_dir = root_dir or helper_config.get_path_val("MAIL_STORAGE_ROOT", default="data")
        self.strict = strict if strict is not None else helper_config.get_bool_val("MAIL_STORAGE_STRICT", default=False)
        self.user_id = self._validate_user_id(user_id)
        self._lock = asyncio.Lock()

    ##########################################
    ################ PATHS ###################
    ##########################################

    @staticmethod
    def _validate_user_id(user_id: str | None) -> str:
        """Fall back to the anonymous partition and reject ids that could escape the root."""
        if not user_id:
            return ANONYMOUS_USER
        if not _USER_ID_PATTERN.match(user_id) or user_id in (".", ".."):
            raise ValueError(f"Invalid user id for storage partition: '{user_id}'")
        return user_id

    @property
    def user_dir(self) -> Path:
        return self.root_dir / "users" / self.user_id / "mail"

    @property
    def packages_path(self) -> Path:
        return self.user_dir / PACKAGES_FILENAME

    @property
    def ocr_data_path(self) -> Path:
        return self.user_dir / OCR_DATA_FILENAME

    ##########################################
    ############ MAIL PACKAGES ###############
    ##########################################

    async def save_package(self, package: MailPackage) -> None:
        """Insert or replace a package by id."""
        async with self._lock:
            await asyncio.to_thread(self._upsert_package, package)

    async def list_packages(self, newest_first: bool = False) -> list[MailPackage]:
        """Decode the whole package collection.

        Args:
            newest_first (bool): Sort by created_at descending instead of file order.

        Returns:
            list[MailPackage]: Stored packages; empty if the file does not exist.

        Raises:
            StoreCorruptedError: In strict mode, if the file exists but cannot be decoded.
        """
        async with self._lock:
            packages = await asyncio.to_thread(self._read_packages)
        if newest_first:
            packages.sort(key=lambda p: p.created_at, reverse=True)
        return packages

    async def get_package(self, mail_package_id: str) -> MailPackage | None:
        for package in await self.list_packages():
            if package.id == mail_package_id:
                return package
        return None

    async def delete_package(self, mail_package_id: str) -> bool:
        """Remove a package on explicit user request. The pipeline never calls this."""
        async with self._lock:
            deleted = await asyncio.to_thread(self._remove_package, mail_package_id)
        if deleted:
            self.logging.info("Deleted mail package %s for user '%s'.", mail_package_id, self.user_id)
        return deleted

    async def migrate_image_paths(self) -> int:
        """Rewrite absolute image paths of older records to partition-relative file names.

        Running it again is a no-op; relative paths are never touched.

        Returns:
            int: Number of packages that were rewritten.
        """
        async with self._lock:
            migrated = await asyncio.to_thread(self._migrate_image_paths)
        if migrated:
            self.logging.info("Migrated image paths for %d mail package(s).", migrated)
        return migrated

    ##########################################
    ############## MAIL SCANS ################
    ##########################################

    async def save_scans(self, images: list[Image.Image], mail_package_id: str, timestamp: str) -> list[str]:
        """Write each page as a JPEG and return the file names relative to the partition.

        Args:
            images (list[Image.Image]): Pages in capture order.
            mail_package_id (str): Owning package, for logging.
            timestamp (str): Capture timestamp used in the file names.

        Returns:
            list[str]: One relative path per image, in the same order.

        Raises:
            OSError: If a page cannot be written. No partial list is returned,
                since paths and OCR texts must stay index-aligned.
        """
        saved = await asyncio.to_thread(self._write_scans, images, timestamp)
        self.logging.info("Saved %d scan(s) for mail package %s.", len(saved), mail_package_id)
        return saved

    def resolve_image_path(self, path: str) -> Path | None:
        """Locate a stored page from a relative file name or a legacy absolute path."""
        if path.startswith("/"):
            absolute = Path(path)
            if absolute.is_file():
                return absolute
            # sandbox paths change across reinstalls; the file keeps its name
            candidate = self.user_dir / PurePosixPath(path).name
        else:
            candidate = self.user_dir / path
        return candidate if candidate.is_file() else None

    def load_image(self, path: str) -> Image.Image | None:
        """Load a stored page, or None if it cannot be found or decoded."""
        resolved = self.resolve_image_path(path)
        if resolved is None:
            return None
        try:
            with Image.open(resolved) as image:
                image.load()
                return image.copy()
        except OSError as e:
            self.logging.warning("Could not decode stored scan %s: %s", resolved, e)
            return None

    ##########################################
    ############### OCR BRIDGE ###############
    ##########################################

    async def save_ocr_bridge(self, ocr_data: MailPackageOcrData) -> None:
        """Store the OCR texts of a package, replacing any earlier record for it."""
        async with self._lock:
            await asyncio.to_thread(self._replace_ocr_record, ocr_data.mail_package_id, ocr_data)

    async def load_ocr_bridge(self, mail_package_id: str) -> MailPackageOcrData | None:
        async with self._lock:
            records = await asyncio.to_thread(self._read_ocr_data)
        return next((r for r in records if r.mail_package_id == mail_package_id), None)

    async def delete_ocr_bridge(self, mail_package_id: str) -> None:
        async with self._lock:
            await asyncio.to_thread(self._replace_ocr_record, mail_package_id, None)

    async def list_ocr_bridge_ids(self) -> set[str]:
        async with self._lock:
            records = await asyncio.to_thread(self._read_ocr_data)
        return {r.mail_package_id for r in records}

    ##########################################
    ################ CLEANUP #################
    ##########################################

    async def clear_user_data(self) -> None:
        """Remove the whole partition of the current user."""
        async with self._lock:
            if self.user_dir.exists():
                await asyncio.to_thread(shutil.rmtree, self.user_dir)
                self.logging.info("Cleared mail data for user '%s'.", self.user_id)

    ##########################################
    ######## BLOCKING WORK (THREADS) #########
    ##########################################

    def _upsert_package(self, package: MailPackage) -> None:
        packages = self._read_packages()
        for index, existing in enumerate(packages):
            if existing.id == package.id:
                packages[index] = package
                break
        else:
            packages.append(package)
        self._write_packages(packages)

    def _remove_package(self, mail_package_id: str) -> bool:
        packages = self._read_packages()
        remaining = [p for p in packages if p.id != mail_package_id]
        if len(remaining) == len(packages):
            return False
        self._write_packages(remaining)
        return True

    def _migrate_image_paths(self) -> int:
        packages = self._read_packages()
        migrated = 0
        for index, package in enumerate(packages):
            if not package.image_paths:
                continue
            new_paths = [PurePosixPath(p).name if p.startswith("/") else p for p in package.image_paths]
            if new_paths != package.image_paths:
                for old, new in zip(package.image_paths, new_paths):
                    if old != new:
                        self.logging.debug("Migrating image path: %s -> %s", old, new)
                packages[index] = package.model_copy(update={"image_paths": new_paths})
                migrated += 1
        if migrated:
            self._write_packages(packages)
        return migrated

    def _write_scans(self, images: list[Image.Image], timestamp: str) -> list[str]:
        self.user_dir.mkdir(parents=True, exist_ok=True)
        saved: list[str] = []
        for sequence, image in enumerate(images, start=1):
            filename = scan_filename(timestamp, sequence)

            def _write(tmp_path: Path, image: Image.Image = image) -> None:
                rgb = image if image.mode in ("RGB", "L") else image.convert("RGB")
                rgb.save(tmp_path, format="JPEG", quality=JPEG_QUALITY)

            self._atomic_write(self.user_dir / filename, _write)
            saved.append(filename)
        return saved

    def _replace_ocr_record(self, mail_package_id: str, ocr_data: MailPackageOcrData | None) -> None:
        """Drop the record of a package and, if given, store its replacement."""
        records = self._read_ocr_data()
        remaining = [r for r in records if r.mail_package_id != mail_package_id]
        if ocr_data is not None:
            remaining.append(ocr_data)
        elif len(remaining) == len(records):
            return
        self._write_ocr_data(remaining)

    ##########################################
    ############### FILE I/O #################
    ##########################################

    def _read_packages(self) -> list[MailPackage]:
        return self._read_collection(self.packages_path, MailPackage.model_validate)

    def _write_packages(self, packages: list[MailPackage]) -> None:
        self._write_collection(self.packages_path, [p.to_json_dict() for p in packages])

    def _read_ocr_data(self) -> list[MailPackageOcrData]:
        return self._read_collection(self.ocr_data_path, MailPackageOcrData.model_validate)

    def _write_ocr_data(self, records: list[MailPackageOcrData]) -> None:
        self._write_collection(self.ocr_data_path, [r.to_json_dict() for r in records])

    def _read_collection(self, path: Path, parse: Callable[[dict], object]) -> list:
        if not path.exists():
            return []
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(raw, list):
                raise ValueError(f"expected a JSON array, got {type(raw).__name__}")
            return [parse(item) for item in raw]
        except (ValueError, ValidationError) as e:
            return self._handle_corrupt_file(path, e)

    def _handle_corrupt_file(self, path: Path, error: Exception) -> list:
        if self.strict:
            raise StoreCorruptedError(f"Cannot decode {path}: {error}") from error
        quarantined = self._quarantine_corrupt_file(path)
        self.logging.warning("Could not decode %s (%s); moved it to %s and continuing with an empty collection.", path, error, quarantined)
        return []

    def _write_collection(self, path: Path, items: list[dict]) -> None:
        def _write(tmp_path: Path) -> None:
            tmp_path.write_text(json.dumps(items, ensure_ascii=False, indent=2), encoding="utf-8")

        self._atomic_write(path, _write)

    def _atomic_write(self, target: Path, writer: Callable[[Path], None]) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = target.with_name(f".{target.name}.{uuid.uuid4().hex}.tmp")
        try:
            writer(tmp_path)
            tmp_path.replace(target)
        finally:
            if tmp_path.exists():
                tmp_path.unlink(missing_ok=True)

    def _quarantine_corrupt_file(self, path: Path) -> Path:
        candidate = path.with_name(f"{path.name}.corrupt")
        counter = 1
        while candidate.exists():
            counter += 1
            candidate = path.with_name(f"{path.name}.corrupt{counter}")
        path.replace(candidate)
        return candidate
