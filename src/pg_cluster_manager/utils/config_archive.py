import logging
import os
import shutil

ARCHIVE_DIR_PREFIX = "repmgr-config-archive"
RESTORED_FILE_MODE = 0o600


def get_archive_dir(archive_root, node_name):
    return os.path.join(archive_root or "/tmp", f"{ARCHIVE_DIR_PREFIX}-{node_name}")


def archive_config_files(data_directory, config_files, archive_root, node_name):
    """Copies the listed files out of the data directory into the per-node archive directory.
    Returns (archive_dir, list of archived file names). Raises OSError if the archive directory
    cannot be prepared or a file cannot be copied."""
    logger = logging.getLogger("logger")
    archive_dir = get_archive_dir(archive_root, node_name)

    if os.path.isdir(archive_dir):
        for entry in os.scandir(archive_dir):
            if entry.is_file(follow_symlinks=False):
                os.unlink(entry.path)
    else:
        os.makedirs(archive_dir, mode=0o700)

    archived = []
    for name in config_files:
        source = os.path.join(data_directory, name)
        if not os.path.isfile(source):
            logger.warning(f"Configuration file \"{source}\" not found, will not be archived.")
            continue
        shutil.copyfile(source, os.path.join(archive_dir, name))
        logger.debug(f"Configuration file \"{source}\" archived.")
        archived.append(name)

    logger.info(f"{len(archived)} file(s) archived to \"{archive_dir}\".")
    return archive_dir, archived


def restore_config_files(data_directory, archive_root, node_name):
    """Copies every archived file back to the data directory with mode 0600, removes the copy and finally
    the archive directory when it is empty. Returns (restored, failed) file name lists."""
    logger = logging.getLogger("logger")
    archive_dir = get_archive_dir(archive_root, node_name)
    restored, failed = [], []

    if not os.path.isdir(archive_dir):
        logger.debug(f"Archive directory \"{archive_dir}\" does not exist; nothing to restore.")
        return restored, failed

    for entry in sorted(os.scandir(archive_dir), key=lambda e: e.name):
        if not entry.is_file(follow_symlinks=False):
            continue
        target = os.path.join(data_directory, entry.name)
        try:
            shutil.copyfile(entry.path, target)
            os.chmod(target, RESTORED_FILE_MODE)
            os.unlink(entry.path)
        except OSError as ex:
            logger.error(f"Unable to restore \"{entry.name}\" to \"{data_directory}\": {ex}")
            failed.append(entry.name)
            continue
        restored.append(entry.name)

    if failed:
        logger.warning(f"Archive directory \"{archive_dir}\" retained; {len(failed)} file(s) could not be restored.")
    else:
        try:
            os.rmdir(archive_dir)
        except OSError as ex:
            logger.warning(f"Unable to remove archive directory \"{archive_dir}\": {ex}")

    logger.info(f"{len(restored)} file(s) restored from \"{archive_dir}\".")
    return restored, failed
