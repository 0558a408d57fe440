#!/usr/bin/env python3
"""
Mail Backup Script

Backs up a POP3 mailbox to local disk.
- Saves every message as a raw .eml file (plus its raw body section for debugging)
- Prints the decoded headers and the primary text content of each message
- Logs Content-Type details and a short body classification to logs/mail.log
Body extraction itself lives in body_extractor; this module only does retrieval,
persistence, configuration and log wiring.
"""

import datetime
import logging
import os
import poplib
import sys
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from dotenv import load_dotenv

from body_extractor import BodyExtractor, BodyTag, ExtractionResult, HTML_PREFIX, ResultKind, resolve_content_type
from html_content import HTMLRenderer
from message_entity import MessageEntity, decode_header_field, decode_header_value, split_header_block

LOG_FILE_NAME = "mail.log"
LOG_FORMAT = "%(asctime)s %(levelname)s %(module)s:%(lineno)d %(message)s"


class ConfigError(ValueError):
    """Raised when the environment does not describe a usable backup configuration"""


@dataclass
class BackupStats:
    """Statistics for a mailbox backup run with error tracking and timing"""
    total_messages: int = 0
    processed: int = 0
    saved: int = 0
    errors: int = 0

    # Error categorization
    retrieve_errors: int = 0
    save_errors: int = 0
    output_errors: int = 0
    processing_errors: int = 0

    # Body classification totals, keyed by tag
    tag_counts: Dict[str, int] = field(default_factory=dict)

    # Timing information
    start_time: Optional[datetime.datetime] = None
    end_time: Optional[datetime.datetime] = None

    def start_processing(self) -> None:
        """Mark the start of processing"""
        self.start_time = datetime.datetime.now()

    def end_processing(self) -> None:
        """Mark the end of processing"""
        self.end_time = datetime.datetime.now()

    def get_processing_duration(self) -> Optional[str]:
        """Get formatted processing duration"""
        if self.start_time and self.end_time:
            duration = self.end_time - self.start_time
            total_seconds = int(duration.total_seconds())
            hours, remainder = divmod(total_seconds, 3600)
            minutes, seconds = divmod(remainder, 60)

            if hours > 0:
                return f"{hours}h {minutes}m {seconds}s"
            elif minutes > 0:
                return f"{minutes}m {seconds}s"
            else:
                return f"{seconds}s"
        return None

    def increment_error_type(self, error_type: str) -> None:
        """Increment specific error type and total errors"""
        self.errors += 1

        if error_type == 'retrieve':
            self.retrieve_errors += 1
        elif error_type == 'save':
            self.save_errors += 1
        elif error_type == 'output':
            self.output_errors += 1
        elif error_type == 'processing':
            self.processing_errors += 1

    def record_tag(self, tag: BodyTag) -> None:
        """Count one extracted body under its classification tag"""
        key = str(tag)
        self.tag_counts[key] = self.tag_counts.get(key, 0) + 1

    def get_summary(self) -> str:
        """Get a formatted summary of backup statistics"""
        duration_str = self.get_processing_duration()
        duration_line = f"\n  Processing time: {duration_str}" if duration_str else ""

        summary = (f"Backup Summary:\n"
                   f"  Messages on server: {self.total_messages}\n"
                   f"  Processed: {self.processed}\n"
                   f"  Saved: {self.saved}\n"
                   f"  Total errors: {self.errors}{duration_line}")

        if self.tag_counts:
            tags = ", ".join(f"{tag} {count}" for tag, count in sorted(self.tag_counts.items()))
            summary += f"\n  Body types: {tags}"

        if self.errors > 0:
            error_details = []
            if self.retrieve_errors > 0:
                error_details.append(f"retrieve: {self.retrieve_errors}")
            if self.save_errors > 0:
                error_details.append(f"save: {self.save_errors}")
            if self.output_errors > 0:
                error_details.append(f"output: {self.output_errors}")
            if self.processing_errors > 0:
                error_details.append(f"processing: {self.processing_errors}")

            if error_details:
                summary += f"\n  Error breakdown: {', '.join(error_details)}"

        return summary

    def get_quick_stats(self) -> str:
        """Get a quick one-line summary for progress logging"""
        return f"processed: {self.processed}, saved: {self.saved}, errors: {self.errors}"


def _parse_bool(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


class BackupConfig:
    """Loads and validates backup settings from the environment"""

    REQUIRED_VARS = ['EMAIL', 'PASSWORD', 'POP3_SERVER', 'POP3_PORT']

    def __init__(self):
        self.email_address: Optional[str] = None
        self.password: Optional[str] = None
        self.pop3_server: Optional[str] = None
        self.port: int = 110
        self.use_tls: bool = False
        self.backup_dir: str = "backup"
        self.log_dir: str = "logs"
        self.image_scan_mode: str = "forward"
        self.render_html_preview: bool = False

    def load_environment(self, env_file: Optional[str] = None) -> None:
        """
        Load settings from a .env file and the process environment.

        Args:
            env_file: Optional path to a .env file; the nearest .env is used when omitted

        Raises:
            ConfigError: If required variables are missing or a value is invalid
        """
        load_dotenv(env_file)

        missing_vars = []
        for var in self.REQUIRED_VARS:
            value = os.getenv(var)
            if not value or value.strip() == '':
                missing_vars.append(var)

        if missing_vars:
            raise ConfigError(f"Missing required environment variables: {', '.join(missing_vars)}")

        self.email_address = os.getenv('EMAIL').strip()
        self.password = os.getenv('PASSWORD')
        self.pop3_server = os.getenv('POP3_SERVER').strip()

        port_value = os.getenv('POP3_PORT').strip()
        try:
            self.port = int(port_value)
        except ValueError:
            raise ConfigError(f"Invalid POP3_PORT: {port_value!r}")

        self.use_tls = _parse_bool(os.getenv('POP3_TLS'))
        self.backup_dir = os.getenv('BACKUP_DIR', '').strip() or "backup"
        self.log_dir = os.getenv('LOG_DIR', '').strip() or "logs"
        self.render_html_preview = _parse_bool(os.getenv('RENDER_HTML_PREVIEW'))

        self.image_scan_mode = (os.getenv('IMAGE_SCAN_MODE', '').strip().lower() or "forward")
        if self.image_scan_mode not in BodyExtractor.SCAN_MODES:
            raise ConfigError(
                f"Invalid IMAGE_SCAN_MODE '{self.image_scan_mode}'. "
                f"Supported modes: {', '.join(BodyExtractor.SCAN_MODES)}"
            )


def configure_logging(log_dir: str) -> logging.Logger:
    """
    Send backup log records to <log_dir>/mail.log.

    Calling this again replaces the previous handlers.

    Args:
        log_dir: Directory that holds the log file

    Returns:
        logging.Logger: The configured "mail_backup" logger
    """
    os.makedirs(log_dir, exist_ok=True)
    backup_logger = logging.getLogger("mail_backup")
    backup_logger.setLevel(logging.INFO)
    backup_logger.propagate = False

    handler = logging.FileHandler(os.path.join(log_dir, LOG_FILE_NAME), mode='a', encoding='utf-8')
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    for old_handler in list(backup_logger.handlers):
        backup_logger.removeHandler(old_handler)
        old_handler.close()
    backup_logger.addHandler(handler)
    return backup_logger


class POP3ConnectionManager:
    """Manages the POP3 session with retry logic and error handling"""

    def __init__(self, config: BackupConfig):
        self.config = config
        self.connection: Optional[poplib.POP3] = None
        self.max_retries = 3
        self.is_connected = False
        self.timeout = 60

    def connect(self) -> bool:
        """
        Open and authenticate the POP3 session with exponential backoff.

        Returns:
            bool: True if connection successful, False otherwise
        """
        for attempt in range(self.max_retries):
            connection = None
            try:
                print(f"Attempting POP3 connection to {self.config.pop3_server}:{self.config.port} (attempt {attempt + 1}/{self.max_retries})")

                if self.config.use_tls:
                    connection = poplib.POP3_SSL(self.config.pop3_server, self.config.port, timeout=self.timeout)
                else:
                    connection = poplib.POP3(self.config.pop3_server, self.config.port, timeout=self.timeout)

                connection.user(self.config.email_address)
                connection.pass_(self.config.password)

                self.connection = connection
                self.is_connected = True
                print(f"Successfully connected to mailbox: {self.config.email_address}")
                return True

            except poplib.error_proto as e:
                error_msg = f"POP3 authentication error: {str(e)}"
            except OSError as e:
                error_msg = f"Connection error: {str(e)}"

            if connection is not None:
                try:
                    connection.close()
                except OSError:
                    pass

            if attempt == self.max_retries - 1:
                print(f"Error: {error_msg}")
                return False

            print(f"Warning: {error_msg} - retrying...")
            # Exponential backoff: wait 1s, 2s between attempts
            wait_time = 2 ** attempt
            print(f"Waiting {wait_time} seconds before retry...")
            time.sleep(wait_time)

        return False

    def disconnect(self) -> None:
        """Send QUIT and release the session"""
        if self.connection and self.is_connected:
            try:
                self.connection.quit()
                print("POP3 connection closed successfully")
            except (poplib.error_proto, OSError) as e:
                print(f"Warning: Error during disconnect: {str(e)}")
            finally:
                self.connection = None
                self.is_connected = False

    def __enter__(self):
        """Context manager entry"""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - ensures cleanup"""
        self.disconnect()

    def stat(self) -> Tuple[int, int]:
        """
        Get the mailbox size.

        Returns:
            tuple: (message_count, total_size_in_octets)
        """
        if not self.is_connected or not self.connection:
            raise RuntimeError("Not connected to POP3 server")
        count, size = self.connection.stat()
        return count, size

    def list_messages(self) -> List[Tuple[int, int]]:
        """
        List every message in the mailbox.

        Returns:
            list: (message_id, size) pairs in server order
        """
        if not self.is_connected or not self.connection:
            raise RuntimeError("Not connected to POP3 server")

        _response, listings, _octets = self.connection.list()
        messages = []
        for listing in listings:
            fields = listing.decode('ascii', errors='replace').split()
            if len(fields) < 2:
                continue
            try:
                messages.append((int(fields[0]), int(fields[1])))
            except ValueError:
                print(f"Warning: Ignoring malformed LIST entry: {listing!r}")
        return messages

    def retrieve(self, message_id: int) -> Optional[bytes]:
        """
        Retrieve one message with a single retry on timeout/connection errors.

        Args:
            message_id: Message number from LIST

        Returns:
            bytes: Raw message bytes with CRLF line endings, or None if retrieval failed
        """
        if not self.is_connected or not self.connection:
            print(f"Error: Not connected to POP3 server for message {message_id}")
            return None

        max_retrieve_retries = 2

        for retrieve_attempt in range(max_retrieve_retries):
            try:
                _response, lines, _octets = self.connection.retr(message_id)
                return b"\r\n".join(lines) + b"\r\n"

            except poplib.error_proto as e:
                print(f"Warning: Server refused message {message_id}: {str(e)}")
                return None
            except OSError as e:
                error_msg = f"Timeout/connection error retrieving message {message_id}: {str(e)}"
                if retrieve_attempt == max_retrieve_retries - 1:
                    print(f"Error: {error_msg} - maximum retries exceeded")
                    return None
                print(f"Warning: {error_msg} - retrying retrieval...")
                time.sleep(1)

        return None


class MailArchiveWriter:
    """Writes retrieved messages to the backup directory"""

    def __init__(self, backup_dir: str = "backup", log_dir: str = "logs"):
        """
        Initialize the writer and create its directories.

        Args:
            backup_dir: Directory for .eml and raw body files
            log_dir: Directory for the log file
        """
        self.backup_dir = backup_dir
        self.log_dir = log_dir
        self.files_written = 0

        for directory in (self.backup_dir, self.log_dir):
            self._ensure_directory(directory)

    def _ensure_directory(self, directory: str) -> None:
        """Create directory if it doesn't exist"""
        if not os.path.exists(directory):
            os.makedirs(directory)
            print(f"Created directory: {directory}")

    def eml_path(self, message_id: int) -> str:
        return os.path.join(self.backup_dir, f"mail_{message_id}.eml")

    def raw_body_path(self, message_id: int) -> str:
        return os.path.join(self.backup_dir, f"mail_{message_id}_rawbody.txt")

    def save_eml(self, message_id: int, raw: bytes) -> str:
        """
        Save the raw message exactly as retrieved.

        Returns:
            str: Path of the written file

        Raises:
            OSError: If the file cannot be written
        """
        path = self.eml_path(message_id)
        with open(path, 'wb') as f:
            f.write(raw)
        self.files_written += 1
        return path

    def save_raw_body(self, message_id: int, raw: bytes) -> str:
        """
        Save the undecoded body section (everything after the header block).

        Returns:
            str: Path of the written file

        Raises:
            OSError: If the file cannot be written
        """
        _header_bytes, body_bytes = split_header_block(raw)
        path = self.raw_body_path(message_id)
        with open(path, 'wb') as f:
            f.write(body_bytes)
        self.files_written += 1
        return path


class MailBackupProcessor:
    """Retrieves, saves and summarizes every message in the mailbox"""

    def __init__(self, pop3_manager: POP3ConnectionManager, archive_writer: MailArchiveWriter,
                 logger: logging.Logger, extractor: Optional[BodyExtractor] = None,
                 html_renderer: Optional[HTMLRenderer] = None):
        self.pop3_manager = pop3_manager
        self.archive_writer = archive_writer
        self.logger = logger
        self.extractor = extractor or BodyExtractor()
        self.html_renderer = html_renderer  # Render HTML bodies as text on the console when set
        self.stats = BackupStats()

    def process_mailbox(self) -> BackupStats:
        """
        Back up every message listed by the server.

        Returns:
            BackupStats: Final backup statistics
        """
        print("Starting mailbox backup...")
        self.stats.start_processing()

        count, size = self.pop3_manager.stat()
        self.stats.total_messages = count
        print(f"total messages= {count} size= {size}")

        for message_id, _size in self.pop3_manager.list_messages():
            try:
                self.process_message(message_id)
            except Exception as e:
                print(f"Error: Unexpected error processing message {message_id}: {str(e)}")
                self.logger.error("Unexpected error processing message ID %d: %s", message_id, e)
                self.stats.increment_error_type('processing')
                continue

        self.stats.end_processing()
        print("\nMailbox backup completed!")
        print(self.stats.get_summary())
        return self.stats

    def process_message(self, message_id: int) -> Optional[ExtractionResult]:
        """
        Retrieve, save and extract one message.

        Args:
            message_id: Message number from LIST

        Returns:
            ExtractionResult: Extracted body, or None if the message could not be retrieved or saved
        """
        print(f"📨 Processing message ID: {message_id}")
        self.stats.processed += 1

        raw = self.pop3_manager.retrieve(message_id)
        if raw is None:
            self.logger.error("Failed to retrieve message ID %d", message_id)
            self.stats.increment_error_type('retrieve')
            return None

        try:
            self.archive_writer.save_eml(message_id, raw)
        except OSError as e:
            self.logger.error("Failed to save message ID %d: %s", message_id, e)
            self.stats.increment_error_type('save')
            return None
        self.stats.saved += 1

        entity = MessageEntity.from_bytes(raw)
        self._log_content_type(message_id, entity)
        self._print_headers(entity)

        try:
            self.archive_writer.save_raw_body(message_id, raw)
        except OSError as e:
            self.logger.warning("Failed to write raw body file for message %d: %s", message_id, e)
            self.stats.increment_error_type('output')

        result = self.extractor.extract_primary_text(entity)
        for note in result.notes:
            self.logger.warning("mail_%d: %s", message_id, note)
        self.stats.record_tag(result.tag)
        self.logger.info("mail_%d body result: %s", message_id, result.tag)

        print("📄 Body:\n" + self.render_body(result))
        print("=" * 36 + "\n")
        return result

    def render_body(self, result: ExtractionResult) -> str:
        """Console form of an extracted body"""
        if self.html_renderer and result.kind == ResultKind.HTML:
            return HTML_PREFIX + self.html_renderer.render(result.text[len(HTML_PREFIX):])
        return result.text

    def _log_content_type(self, message_id: int, entity: MessageEntity) -> None:
        header_value = entity.get("Content-Type")
        info = resolve_content_type(header_value)
        if not info.media_type:
            self.logger.warning("Failed to parse Content-Type for message %d: %r", message_id, header_value)
        else:
            self.logger.info("mail_%d Content-Type: %s; boundary=%s", message_id, info.media_type, info.boundary)

    def _print_headers(self, entity: MessageEntity) -> None:
        print("📨 Subject:", decode_header_value(entity.get("Subject")))
        print("📬 From:", decode_header_value(entity.get("From")))
        print("📅 Date:", entity.get("Date"))

        print("🧾 All Headers:")
        for key, value in entity.fields():
            print(f"  {key}: {decode_header_field(value)}")


def main():
    """Main entry point for the Mail Backup Script"""
    print("=" * 80)
    print("MAIL BACKUP SCRIPT")
    print("=" * 80)

    try:
        config = BackupConfig()
        try:
            config.load_environment()
        except ConfigError as e:
            print(f"Error: {e}")
            print("Please ensure your .env file contains EMAIL, PASSWORD, POP3_SERVER and POP3_PORT")
            sys.exit(1)

        archive_writer = MailArchiveWriter(config.backup_dir, config.log_dir)
        backup_logger = configure_logging(config.log_dir)
        extractor = BodyExtractor(config.image_scan_mode)
        html_renderer = HTMLRenderer() if config.render_html_preview else None

        print(f"Mailbox: {config.email_address}")
        print(f"POP3 Settings: {config.pop3_server}:{config.port} (TLS: {'on' if config.use_tls else 'off'})")
        print(f"Backup directory: {config.backup_dir}")

        with POP3ConnectionManager(config) as pop3_manager:
            if not pop3_manager.connect():
                print("Error: Failed to establish POP3 connection after all retry attempts")
                print("Please check your credentials and server settings.")
                sys.exit(1)

            processor = MailBackupProcessor(pop3_manager, archive_writer, backup_logger,
                                            extractor, html_renderer)
            final_stats = processor.process_mailbox()

        if final_stats.errors > 0:
            print(f"⚠ Note: {final_stats.errors} errors occurred during backup, see "
                  f"{os.path.join(config.log_dir, LOG_FILE_NAME)}")
        print("=" * 80)

    except KeyboardInterrupt:
        print("\n" + "=" * 80)
        print("Script interrupted by user (Ctrl+C)")
        print("=" * 80)
        sys.exit(0)
    except (poplib.error_proto, OSError) as e:
        print("\n" + "=" * 80)
        print("CRITICAL ERROR: Mailbox backup failed")
        print("-" * 40)
        print(f"Error: {e}")
        print("=" * 80)
        sys.exit(1)


if __name__ == "__main__":
    main()
