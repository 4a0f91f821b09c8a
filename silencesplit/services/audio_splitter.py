# silencesplit/services/audio_splitter.py

import os
import enum
import shutil
import logging
import tempfile
from dataclasses import dataclass
from typing import List, Optional

from silencesplit.exceptions import InvalidInputError, RestoreError, SplitError
from silencesplit.services.media_probe import MediaProber
from silencesplit.services import file_service

DEFAULT_BUFFER_SEC = 120
BACKUP_SUFFIX = "_original"
TEMP_MEETING_SUFFIX = "_meeting"

MB = 1024 * 1024


class SplitState(enum.Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    BACKED_UP = "backed_up"
    MEETING_EXTRACTED = "meeting_extracted"
    SILENCE_EXTRACTED = "silence_extracted"
    FINALIZED = "finalized"
    FAILED = "failed"
    RESTORING = "restoring"
    RESTORED = "restored"
    ABANDONED = "abandoned"


TERMINAL_STATES = {SplitState.FINALIZED, SplitState.RESTORED, SplitState.ABANDONED}


@dataclass(frozen=True)
class SplitResult:
    success: bool
    meeting_path: str
    silence_path: str
    backup_path: Optional[str]
    original_size_bytes: int
    meeting_size_bytes: int
    silence_size_bytes: int
    space_saved_bytes: int
    compression_ratio: float
    split_time_seconds: float
    buffer_seconds: float


class BackupTransaction:
    """
    Backup-then-mutate scope for one file.

    On enter the file is copied to `backup_path`. Leaving the block with an
    exception deletes `scratch_paths`, copies the backup back over the file
    and removes the backup. If that restore fails, RestoreError is raised in
    place of the original exception. `commit()` ends the transaction and
    removes the backup unless `keep_backup` is set.
    """

    def __init__(self, path: str, backup_path: str, scratch_paths: List[str], keep_backup: bool = False) -> None:
        self.path = path
        self.backup_path = backup_path
        self.scratch_paths = scratch_paths
        self.keep_backup = keep_backup
        self.state = SplitState.IDLE

    def advance(self, state: SplitState) -> None:
        logging.debug(f"[SPLIT] {os.path.basename(self.path)}: {self.state.value} -> {state.value}")
        self.state = state

    def __enter__(self) -> "BackupTransaction":
        logging.info(f"[SPLIT] Creating backup '{os.path.basename(self.backup_path)}'...")
        try:
            shutil.copy2(self.path, self.backup_path)
        except OSError:
            # the original is untouched; only a partial backup needs removing
            file_service.remove_files([self.backup_path])
            raise
        self.advance(SplitState.BACKED_UP)
        return self

    def commit(self) -> None:
        """
        Ends the transaction. The split is final from here on; a backup that
        cannot be removed is left in place with a warning.
        """
        self.advance(SplitState.FINALIZED)
        if self.keep_backup:
            logging.info(f"[SPLIT] Backup preserved at: {os.path.basename(self.backup_path)}")
            return
        try:
            os.remove(self.backup_path)
        except OSError as e:
            logging.warning(f"[SPLIT] Split is complete but backup '{self.backup_path}' could not be removed: {e}")
            return
        logging.info("[SPLIT] Backup removed")

    def rollback(self, error: BaseException) -> None:
        self.advance(SplitState.FAILED)
        self.advance(SplitState.RESTORING)
        logging.info("[SPLIT] Attempting to restore from backup...")
        file_service.remove_files(self.scratch_paths)
        try:
            shutil.copy2(self.backup_path, self.path)
            os.remove(self.backup_path)
        except OSError as restore_error:
            self.advance(SplitState.ABANDONED)
            logging.critical(
                f"[SPLIT] Failed to restore '{self.path}' from backup '{self.backup_path}': {restore_error}. "
                f"File state is unknown, manual review required."
            )
            raise RestoreError(self.path, error, restore_error) from restore_error
        self.advance(SplitState.RESTORED)
        logging.info("[SPLIT] Original file restored from backup")

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc is None:
            if self.state not in TERMINAL_STATES:
                self.commit()
            return False
        if self.state in TERMINAL_STATES:
            return False
        self.rollback(exc)
        return False


class AudioSplitter:
    """
    Splits a recording into a meeting segment (kept at the original path) and
    a silence segment (`<name>.silence<ext>` next to it), by stream copy.
    """

    def __init__(self, prober: MediaProber,
                 silence_marker: str = file_service.SILENCE_MARKER,
                 preserve_original: bool = False) -> None:
        self.prober = prober
        self.silence_marker = silence_marker
        self.preserve_original = preserve_original

    def paths_for(self, input_path: str) -> dict:
        directory = os.path.dirname(input_path)
        base, ext = os.path.splitext(os.path.basename(input_path))
        return {
            "meeting": input_path,
            "silence": file_service.silence_path_for(input_path, self.silence_marker),
            "backup": os.path.join(directory, f"{base}{BACKUP_SUFFIX}{ext}"),
        }

    @staticmethod
    def _new_temp_meeting_path(input_path: str) -> str:
        """Reserves a unique scratch file next to the input for the meeting segment."""
        base, ext = os.path.splitext(os.path.basename(input_path))
        fd, path = tempfile.mkstemp(suffix=ext, prefix=f"{base}{TEMP_MEETING_SUFFIX}_",
                                    dir=os.path.dirname(input_path))
        os.close(fd)
        return path

    @staticmethod
    def validate_input_file(input_path: str) -> None:
        if not os.path.exists(input_path):
            raise InvalidInputError(f"Input file validation failed: '{input_path}' does not exist")
        if not os.path.isfile(input_path):
            raise InvalidInputError(f"Input file validation failed: '{input_path}' is not a file")
        if not os.access(input_path, os.R_OK):
            raise InvalidInputError(f"Input file validation failed: '{input_path}' is not readable")
        if os.path.getsize(input_path) == 0:
            raise InvalidInputError(f"Input file validation failed: '{input_path}' is empty")

    def validate_split_results(self, meeting_path: str, silence_path: str) -> None:
        for label, path in (("Meeting", meeting_path), ("Silence", silence_path)):
            if os.path.getsize(path) == 0:
                raise ValueError(f"Split validation failed: {label} file is empty after split")
        self.prober.validate_is_audio(meeting_path)
        self.prober.validate_is_audio(silence_path)

    def split_at_time(self, input_path: str, split_time_seconds: float,
                      buffer_seconds: float = DEFAULT_BUFFER_SEC) -> SplitResult:
        """
        Splits `input_path` at `split_time_seconds`.

        The meeting segment covers [0, split + buffer] and replaces the
        original file. The silence segment covers [split, end]. Any failure
        after the backup is taken restores the original byte for byte and
        raises SplitError; a failed restore raises RestoreError.
        """
        input_path = os.path.abspath(input_path)
        paths = self.paths_for(input_path)
        logging.info(
            f"[SPLIT] Splitting '{os.path.basename(input_path)}' at "
            f"{int(split_time_seconds // 60)}m {split_time_seconds % 60:g}s"
        )

        try:
            self.validate_input_file(input_path)
            if os.path.exists(paths["backup"]):
                raise InvalidInputError(
                    f"Backup '{os.path.basename(paths['backup'])}' already exists from an earlier split; "
                    f"refusing to overwrite it"
                )
            if os.path.exists(paths["silence"]):
                raise InvalidInputError(
                    f"Silence segment '{os.path.basename(paths['silence'])}' already exists; "
                    f"refusing to overwrite it"
                )
        except InvalidInputError as e:
            logging.error(f"[SPLIT] Split failed: {e}")
            raise SplitError(f"Audio split failed: {e}", cause=e) from e

        original_size = os.path.getsize(input_path)

        try:
            txn = BackupTransaction(
                input_path,
                paths["backup"],
                # the silence path was checked to be free, so anything there is ours
                scratch_paths=[paths["silence"]],
                keep_backup=self.preserve_original,
            )
            with txn:
                temp_meeting = self._new_temp_meeting_path(input_path)
                txn.scratch_paths.append(temp_meeting)

                meeting_end = split_time_seconds + buffer_seconds
                logging.info(f"[SPLIT] Extracting meeting (0 to {int(meeting_end // 60)}m {meeting_end % 60:g}s)...")
                self.prober.extract_segment(input_path, 0, meeting_end, temp_meeting)
                txn.advance(SplitState.MEETING_EXTRACTED)

                logging.info(f"[SPLIT] Extracting silence ({int(split_time_seconds // 60)}m to end)...")
                self.prober.extract_segment(input_path, split_time_seconds, None, paths["silence"])
                txn.advance(SplitState.SILENCE_EXTRACTED)

                logging.info("[SPLIT] Replacing original with meeting portion...")
                # mkstemp files are owner-only; keep the recording's permissions
                shutil.copymode(input_path, temp_meeting)
                os.replace(temp_meeting, paths["meeting"])

                meeting_size = os.path.getsize(paths["meeting"])
                silence_size = os.path.getsize(paths["silence"])
                self.validate_split_results(paths["meeting"], paths["silence"])
                txn.commit()
        except RestoreError:
            raise
        except Exception as e:
            logging.error(f"[SPLIT] Split failed: {e}")
            raise SplitError(f"Audio split failed: {e}", cause=e) from e

        space_saved = original_size - meeting_size
        compression_ratio = space_saved / original_size

        logging.info("[SPLIT] Split completed successfully")
        logging.info(f"[SPLIT]    Original: {original_size / MB:.0f}MB")
        logging.info(f"[SPLIT]    Meeting: {meeting_size / MB:.0f}MB")
        logging.info(f"[SPLIT]    Silence: {silence_size / MB:.0f}MB")
        logging.info(f"[SPLIT]    Space saved: {space_saved / MB:.0f}MB ({compression_ratio * 100:.0f}%)")

        return SplitResult(
            success=True,
            meeting_path=paths["meeting"],
            silence_path=paths["silence"],
            backup_path=paths["backup"] if os.path.exists(paths["backup"]) else None,
            original_size_bytes=original_size,
            meeting_size_bytes=meeting_size,
            silence_size_bytes=silence_size,
            space_saved_bytes=space_saved,
            compression_ratio=compression_ratio,
            split_time_seconds=split_time_seconds,
            buffer_seconds=buffer_seconds,
        )

    def merge_split_files(self, meeting_path: str, silence_path: str, output_path: str) -> str:
        """
        Joins a split pair back into one file. The buffer overlap at the split
        point appears twice in the result.
        """
        logging.info(f"[SPLIT] Merging split files back together into '{os.path.basename(output_path)}'...")
        self.prober.concat_segments(meeting_path, silence_path, output_path)
        logging.info(f"[SPLIT] Files merged successfully: {os.path.basename(output_path)}")
        return output_path
