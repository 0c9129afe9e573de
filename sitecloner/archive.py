import asyncio
import logging
import os
import shutil
import zipfile

from .errors import PersistenceFailure

logger = logging.getLogger(__name__)

# zip cannot store dates before 1980; a fixed stamp keeps archives reproducible
FIXED_DATE_TIME = (1980, 1, 1, 0, 0, 0)
COMPRESS_LEVEL = 9
CHUNK_SIZE = 1024 * 1024


def iter_files(source_dir: str):
    """Yield (absolute path, archive name) for every file, in sorted order."""
    for dirpath, dirnames, filenames in os.walk(source_dir):
        dirnames.sort()
        for name in sorted(filenames):
            full = os.path.join(dirpath, name)
            arcname = os.path.relpath(full, source_dir).replace(os.sep, "/")
            yield full, arcname


def build(source_dir: str, archive_path: str) -> str:
    """Zip source_dir into archive_path with entry names relative to source_dir.

    The file only appears at archive_path once it is fully written and closed.
    """
    partial_path = archive_path + ".part"
    try:
        os.makedirs(os.path.dirname(os.path.abspath(archive_path)), exist_ok=True)
        with zipfile.ZipFile(partial_path, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=COMPRESS_LEVEL) as zf:
            count = 0
            for full, arcname in iter_files(source_dir):
                info = zipfile.ZipInfo(arcname, date_time=FIXED_DATE_TIME)
                info.external_attr = 0o644 << 16
                info.compress_type = zipfile.ZIP_DEFLATED
                # ZipFile.open ignores the archive-wide level for a ZipInfo
                info._compresslevel = COMPRESS_LEVEL
                with open(full, "rb") as src, zf.open(info, "w") as dst:
                    shutil.copyfileobj(src, dst, CHUNK_SIZE)
                count += 1
        os.replace(partial_path, archive_path)
    except (OSError, zipfile.BadZipFile, zipfile.LargeZipFile) as e:
        if os.path.exists(partial_path):
            os.remove(partial_path)
        raise PersistenceFailure(f"Could not build archive: {e}")

    logger.info(f"🗜 Archive ready: {archive_path} ({count} files)")
    return archive_path


async def build_async(source_dir: str, archive_path: str) -> str:
    return await asyncio.to_thread(build, source_dir, archive_path)
