#!/usr/bin/env python3
"""
CBR2PDF - Converts CBR and CBZ comic archives to PDF format

This program converts every comic archive found in a directory into a PDF
written next to it. Each archive goes through the same pipeline:

- Extracts the page images into a private working directory
- Optionally drops the last page (usually a scanner credit or an ad)
- Recompresses JPEG pages to shrink the final document
- Lays out one PDF page per image, sized from the image's pixels and DPI

Features:
- Command line interface with a target directory argument
- Archive type detection by signature (a .cbr that is really a ZIP still works)
- Concurrent conversion of all archives in the directory
- Per-file failure isolation with a failure log for the whole batch
- Working directories are always removed, even when a conversion fails
"""

import argparse
import enum
import io
import math
import os
import shutil
import sys
import threading
import time
import zipfile
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Dict, Iterator, List, Optional, Tuple

# Import libraries will be checked later to allow --help to work
fitz = None
Image = None
rarfile = None

SUPPORTED_EXTENSIONS = {'.cbr', '.cbz'}
JPEG_EXTENSIONS = ('.jpg', '.jpeg')

DEFAULT_QUALITY = 40
DEFAULT_BATCH_SIZE = 5
# Resolution assumed for images that carry no usable DPI metadata
DEFAULT_DPI = 96.0
POINTS_PER_INCH = 72.0


def check_dependencies():
    """Check and import required dependencies"""
    global fitz, Image, rarfile

    try:
        import fitz as _fitz
        fitz = _fitz
    except ImportError:
        print("Error: PyMuPDF (fitz) is required. Install with: pip install PyMuPDF")
        sys.exit(1)

    try:
        from PIL import Image as _Image
        Image = _Image
    except ImportError:
        print("Error: Pillow is required. Install with: pip install Pillow")
        sys.exit(1)

    try:
        import rarfile as _rarfile
        rarfile = _rarfile
    except ImportError:
        print("Error: rarfile is required. Install with: pip install rarfile")
        sys.exit(1)


def validate_dependencies():
    """Validate that dependencies have been loaded"""
    if fitz is None or Image is None or rarfile is None:
        raise RuntimeError("Dependencies not properly loaded. Call check_dependencies() first.")


class ConversionError(Exception):
    """Base class for failures that stop the conversion of one archive"""
    stage = 'convert'


class ExtractionError(ConversionError):
    """Archive unreadable, corrupt or of an unsupported format"""
    stage = 'extract'


class CompressionError(ConversionError):
    """A page image could not be decoded or re-encoded"""
    stage = 'compress'


class AssemblyError(ConversionError):
    """Image metadata could not be read or the PDF could not be written"""
    stage = 'assemble'


class ConversionCancelled(ConversionError):
    """The batch was cancelled before this archive finished"""
    stage = 'cancelled'


class PageSelection(enum.Enum):
    KEEP_ALL = 'keep-all'
    DROP_LAST = 'drop-last'


class PipelineState(enum.Enum):
    CREATED = 'created'
    EXTRACTED = 'extracted'
    PAGE_SELECTED = 'page-selected'
    COMPRESSED = 'compressed'
    ASSEMBLED = 'assembled'
    CLEANED = 'cleaned'


@dataclass
class BatchConfig:
    """Settings for one batch run, supplied by the caller"""
    target_dir: Path
    page_selection: PageSelection = PageSelection.KEEP_ALL
    quality: int = DEFAULT_QUALITY
    batch_size: int = DEFAULT_BATCH_SIZE
    max_workers: Optional[int] = None
    sequential_names: bool = True
    cleanup_attempts: int = 5
    cleanup_backoff: float = 0.1

    def __post_init__(self):
        self.target_dir = Path(self.target_dir)

    def validate(self) -> None:
        if not self.target_dir.exists() or not self.target_dir.is_dir():
            raise ValueError(f"Target directory does not exist or is not a directory: {self.target_dir}")
        if not 0 <= self.quality <= 100:
            raise ValueError("Quality must be between 0 and 100")
        if self.batch_size < 1:
            raise ValueError("Batch size must be at least 1")
        if self.max_workers is not None and self.max_workers < 1:
            raise ValueError("Number of workers must be at least 1")
        if self.cleanup_attempts < 1:
            raise ValueError("Cleanup attempts must be at least 1")


@dataclass
class ConversionResult:
    """Outcome of converting one archive"""
    source: Path
    success: bool
    failed_stage: Optional[str] = None
    reason: Optional[str] = None
    output: Optional[Path] = None


@dataclass
class BatchProgress:
    completed: int = 0
    total: int = 0

    @property
    def percent(self) -> int:
        if self.total == 0:
            return 100
        return math.ceil(self.completed / self.total * 100)


class ConversionEvents:
    """Receives progress and log events from a batch run.

    Methods may be called from worker threads as well as from the thread
    running the batch, so implementations must be thread-safe.
    """

    def on_progress(self, percent: int) -> None:
        pass

    def on_log(self, line: str) -> None:
        pass


class ConsoleEvents(ConversionEvents):
    """Prints events to stdout"""

    def __init__(self):
        self._lock = threading.Lock()

    def on_progress(self, percent: int) -> None:
        with self._lock:
            print(f"Progress: {percent}%")

    def on_log(self, line: str) -> None:
        with self._lock:
            print(line)


@dataclass
class ArchiveEntry:
    name: str
    is_dir: bool
    data: bytes = b''


class ArchiveReader:
    """Reads the entries of a ZIP (CBZ) or RAR (CBR) archive in archive order.

    The container format is detected from the file signature, so a
    mislabelled archive is still read correctly. Library errors propagate
    unchanged; callers wrap them.
    """

    def __init__(self, path):
        self.path = Path(path)
        self._archive = None

    def __enter__(self):
        validate_dependencies()
        if zipfile.is_zipfile(self.path):
            self._archive = zipfile.ZipFile(self.path)
        elif rarfile.is_rarfile(str(self.path)):
            self._archive = rarfile.RarFile(str(self.path))
        else:
            raise ExtractionError(f"Unsupported or corrupt archive: {self.path.name}")
        return self

    def __exit__(self, exc_type, exc, tb):
        if self._archive is not None:
            self._archive.close()
            self._archive = None

    def __len__(self) -> int:
        return len(self._archive.infolist())

    def __iter__(self) -> Iterator[ArchiveEntry]:
        for info in self._archive.infolist():
            if info.is_dir():
                yield ArchiveEntry(info.filename, True)
            else:
                yield ArchiveEntry(info.filename, False, self._archive.read(info))


def is_jpeg(path: Path) -> bool:
    return path.name.lower().endswith(JPEG_EXTENSIONS)


def list_jpegs(directory: Path) -> List[Path]:
    """JPEG files in directory, in ascending name order"""
    return sorted((p for p in directory.iterdir() if p.is_file() and is_jpeg(p)),
                  key=lambda p: p.name)


def chunked(items: List, size: int) -> Iterator[List]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def page_size_points(width_px: int, height_px: int, dpi: float) -> Tuple[float, float]:
    """PDF page size in points for an image; both axes use the horizontal DPI"""
    return (width_px * POINTS_PER_INCH / dpi, height_px * POINTS_PER_INCH / dpi)


def horizontal_dpi(info: dict) -> float:
    dpi = info.get('dpi')
    if not dpi:
        return DEFAULT_DPI
    try:
        x_dpi = float(dpi[0])
    except (TypeError, ValueError, IndexError):
        return DEFAULT_DPI
    if not math.isfinite(x_dpi) or x_dpi <= 0:
        return DEFAULT_DPI
    return x_dpi


class _Stage:
    """Shared cancellation handling for the pipeline stages"""

    def __init__(self, cancel_event: Optional[threading.Event] = None):
        self.cancel_event = cancel_event

    def check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise ConversionCancelled("Conversion cancelled")


class ArchiveExtractor(_Stage):
    """Writes the file entries of an archive into a working directory"""

    def __init__(self, sequential_names: bool = True, cancel_event: Optional[threading.Event] = None):
        super().__init__(cancel_event)
        self.sequential_names = sequential_names

    def extract(self, source: Path, work_dir: Path) -> int:
        """
        Extract every non-directory entry of source directly into work_dir.
        Internal archive folders are flattened. With sequential names each file
        is prefixed by its zero-padded position in the archive, so name order
        equals archive order; otherwise colliding base names overwrite.
        Returns the number of files written.
        """
        written = 0
        try:
            with ArchiveReader(source) as reader:
                width = max(4, len(str(len(reader))))
                for entry in reader:
                    self.check_cancelled()
                    if entry.is_dir:
                        continue
                    base_name = PurePosixPath(entry.name.replace('\\', '/')).name
                    if not base_name:
                        continue
                    if self.sequential_names:
                        base_name = f"{written + 1:0{width}d}_{base_name}"
                    (work_dir / base_name).write_bytes(entry.data)
                    written += 1
        except ConversionError:
            raise
        except Exception as e:
            # zipfile and rarfile also surface zlib.error, EOFError and CRC failures
            raise ExtractionError(f"{type(e).__name__}: {e}") from e

        if written == 0:
            raise ExtractionError(f"Archive contains no files: {source.name}")
        return written


class PageSelector:
    """Applies the page selection policy to an extracted working directory"""

    def __init__(self, policy: PageSelection = PageSelection.KEEP_ALL):
        self.policy = policy

    def apply(self, work_dir: Path) -> Optional[Path]:
        """
        Returns the removed file, or None when the policy keeps every page.
        Raises OSError when no page could be dropped.
        """
        if self.policy is PageSelection.KEEP_ALL:
            return None
        names = sorted(p.name for p in work_dir.iterdir() if p.is_file())
        if not names:
            raise FileNotFoundError(f"No pages to drop in {work_dir.name}")
        last_page = work_dir / names[-1]
        last_page.unlink()
        return last_page


class ImageCompressor(_Stage):
    """Re-encodes the JPEG pages of a working directory in place"""

    def __init__(self, quality: int = DEFAULT_QUALITY, cancel_event: Optional[threading.Event] = None):
        super().__init__(cancel_event)
        self.quality = quality

    def reencode(self, data: bytes) -> bytes:
        """Re-encode image bytes as JPEG at the configured quality, keeping size and DPI"""
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            save_params = {'quality': self.quality}
            dpi = img.info.get('dpi')
            if dpi:
                save_params['dpi'] = dpi

            # JPEG stores neither transparency nor palettes
            if img.mode in ('RGB', 'L', 'CMYK'):
                output_img = img
            else:
                output_img = img.convert('RGB')

            buffer = io.BytesIO()
            output_img.save(buffer, 'JPEG', **save_params)
            return buffer.getvalue()

    def compress(self, work_dir: Path) -> int:
        validate_dependencies()
        compressed = 0
        for img_path in list_jpegs(work_dir):
            self.check_cancelled()
            try:
                img_path.write_bytes(self.reencode(img_path.read_bytes()))
            except Exception as e:
                raise CompressionError(f"{img_path.name}: {e}") from e
            compressed += 1
        return compressed


class PdfAssembler(_Stage):
    """Builds the output PDF from the JPEG pages of a working directory"""

    PARTIAL_NAME = 'output.pdf.part'

    def __init__(self, batch_size: int = DEFAULT_BATCH_SIZE, cancel_event: Optional[threading.Event] = None):
        super().__init__(cancel_event)
        self.batch_size = batch_size

    def read_page_size(self, img_path: Path) -> Tuple[float, float]:
        with Image.open(img_path) as img:
            width, height = img.size
            return page_size_points(width, height, horizontal_dpi(img.info))

    def _add_pages(self, pdf_doc, images: List[Path]) -> None:
        for img_path in images:
            self.check_cancelled()
            width, height = self.read_page_size(img_path)
            page = pdf_doc.new_page(width=width, height=height)
            page.insert_image(page.rect, filename=str(img_path))

    def assemble(self, work_dir: Path, output_path: Path) -> int:
        """
        Write one page per JPEG in work_dir to output_path.
        Pages are added in batches; the first batch creates a partial file in
        work_dir and later batches are saved incrementally onto it. The
        partial file only replaces output_path once every page is written.
        Returns the page count.
        """
        validate_dependencies()
        images = list_jpegs(work_dir)
        if not images:
            raise AssemblyError("No images found to create PDF file")

        partial_path = work_dir / self.PARTIAL_NAME
        try:
            for batch_index, batch in enumerate(chunked(images, self.batch_size)):
                if batch_index == 0:
                    pdf_doc = fitz.open()
                else:
                    pdf_doc = fitz.open(str(partial_path))
                # no_new_id keeps the output identical across runs on the same pages
                try:
                    self._add_pages(pdf_doc, batch)
                    if batch_index == 0:
                        pdf_doc.save(str(partial_path), no_new_id=True)
                    else:
                        pdf_doc.save(str(partial_path), incremental=True,
                                     encryption=fitz.PDF_ENCRYPT_KEEP, no_new_id=True)
                finally:
                    pdf_doc.close()

            os.replace(partial_path, output_path)
        except ConversionCancelled:
            partial_path.unlink(missing_ok=True)
            raise
        except Exception as e:
            partial_path.unlink(missing_ok=True)
            raise AssemblyError(str(e)) from e

        return len(images)


def remove_work_dir(work_dir: Path, attempts: int = 5, backoff: float = 0.1) -> bool:
    """
    Remove a working directory, retrying while files are still held open.
    Waits backoff, 2*backoff, 4*backoff... between attempts.
    Returns False if the directory could not be removed.
    """
    for attempt in range(attempts):
        try:
            shutil.rmtree(work_dir)
            return True
        except FileNotFoundError:
            return True
        except OSError:
            if attempt < attempts - 1:
                time.sleep(backoff * 2 ** attempt)
    return False


class ConversionPipeline:
    """Converts one archive: extract, select pages, compress, assemble, clean up"""

    def __init__(self, source, config: BatchConfig, events: Optional[ConversionEvents] = None,
                 cancel_event: Optional[threading.Event] = None):
        self.source = Path(source)
        self.config = config
        self.events = events or ConversionEvents()
        self.cancel_event = cancel_event
        self.state = PipelineState.CREATED
        self.work_dir = self.config.target_dir / f".{self.source.name}.work"
        self.output_path = self.config.target_dir / (self.source.stem + '.pdf')

    def _prepare_work_dir(self) -> None:
        try:
            if self.work_dir.exists():
                shutil.rmtree(self.work_dir)
            self.work_dir.mkdir(parents=True)
        except OSError as e:
            raise ExtractionError(f"Could not create working directory: {e}") from e

    def _select_pages(self) -> None:
        # Failing to drop a page is reported but never fails the conversion
        selector = PageSelector(self.config.page_selection)
        try:
            selector.apply(self.work_dir)
        except Exception as e:
            self.events.on_log(f"Warning [select]: {self.source} - {e}")

    def _run_stages(self) -> ConversionResult:
        stage = ExtractionError.stage
        try:
            self._prepare_work_dir()
            extractor = ArchiveExtractor(self.config.sequential_names, self.cancel_event)
            extractor.extract(self.source, self.work_dir)
            self.state = PipelineState.EXTRACTED

            stage = 'select'
            self._select_pages()
            self.state = PipelineState.PAGE_SELECTED

            stage = CompressionError.stage
            ImageCompressor(self.config.quality, self.cancel_event).compress(self.work_dir)
            self.state = PipelineState.COMPRESSED

            stage = AssemblyError.stage
            PdfAssembler(self.config.batch_size, self.cancel_event).assemble(self.work_dir, self.output_path)
            self.state = PipelineState.ASSEMBLED
        except ConversionError as e:
            return ConversionResult(self.source, False, e.stage, f"{type(e).__name__}: {e}")
        except Exception as e:
            return ConversionResult(self.source, False, stage, f"{type(e).__name__}: {e}")

        return ConversionResult(self.source, True, output=self.output_path)

    def cleanup(self) -> None:
        removed = remove_work_dir(self.work_dir, self.config.cleanup_attempts, self.config.cleanup_backoff)
        if not removed:
            self.events.on_log(f"Warning [cleanup]: {self.source} - could not remove {self.work_dir}")
        self.state = PipelineState.CLEANED

    def run(self) -> ConversionResult:
        try:
            result = self._run_stages()
        finally:
            self.cleanup()
        return result


class BatchCoordinator:
    """Converts every archive in a directory concurrently"""

    def __init__(self, config: BatchConfig, events: Optional[ConversionEvents] = None):
        config.validate()
        self.config = config
        self.events = events or ConsoleEvents()
        self.progress = BatchProgress()
        self.failure_log: Dict[str, str] = {}
        self._cancel_event = threading.Event()

    def find_archives(self) -> List[Path]:
        """Find all CBR/CBZ files directly inside the target directory"""
        archives = []

        for file_path in self.config.target_dir.iterdir():
            if file_path.is_file() and file_path.suffix.lower() in SUPPORTED_EXTENSIONS:
                archives.append(file_path)

        archives.sort(key=lambda x: x.name.lower())
        return archives

    def cancel(self) -> None:
        """Ask running conversions to stop at their next check point"""
        self._cancel_event.set()

    def _convert(self, source: Path) -> ConversionResult:
        pipeline = ConversionPipeline(source, self.config, self.events, self._cancel_event)
        return pipeline.run()

    def _record(self, result: ConversionResult) -> None:
        if result.success:
            self.events.on_log(f"Success: {result.source}")
        else:
            self.failure_log[str(result.source)] = result.reason
            self.events.on_log(f"Failed [{result.failed_stage}]: {result.source} - {result.reason}")

        self.progress.completed += 1
        self.events.on_progress(self.progress.percent)

    def run(self) -> List[ConversionResult]:
        """
        Convert all archives and wait for every conversion to finish.
        Only this thread touches the failure log and progress counter;
        workers hand their results back through their futures.
        """
        validate_dependencies()
        archives = self.find_archives()

        self._cancel_event.clear()
        self.failure_log = {}
        self.progress = BatchProgress(total=len(archives))
        self.events.on_progress(0 if archives else 100)

        results = []
        with ThreadPoolExecutor(max_workers=self.config.max_workers) as executor:
            futures = {executor.submit(self._convert, source): source for source in archives}
            try:
                for future in as_completed(futures):
                    try:
                        result = future.result()
                    except Exception as e:
                        result = ConversionResult(futures[future], False, 'convert', f"{type(e).__name__}: {e}")
                    self._record(result)
                    results.append(result)
            except KeyboardInterrupt:
                self.cancel()
                raise

        results.sort(key=lambda r: r.source.name.lower())
        return results


def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(
        description="Convert CBR and CBZ comics in a directory to PDF format.",
        epilog="Examples:\n"
               "  %(prog)s ~/Comics/\n"
               "  %(prog)s --drop-last ~/Comics/\n"
               "  %(prog)s --quality 60 --workers 4 ./downloads/",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument('directory',
                       help='Directory containing CBR/CBZ files; PDFs are written next to them')
    parser.add_argument('--drop-last', '-d',
                       action='store_true',
                       help='Remove the last page of every comic before building the PDF')
    parser.add_argument('--quality', '-q',
                       type=int,
                       default=DEFAULT_QUALITY,
                       help=f'JPEG recompression quality (0-100, default: {DEFAULT_QUALITY})')
    parser.add_argument('--batch-size',
                       type=int,
                       default=DEFAULT_BATCH_SIZE,
                       help=f'Pages written to the PDF per save (default: {DEFAULT_BATCH_SIZE})')
    parser.add_argument('--workers', '-w',
                       type=int,
                       default=None,
                       help='Number of archives converted at once (default: sized from CPU count)')
    parser.add_argument('--version',
                       action='version',
                       version='CBR2PDF 1.0')

    args = parser.parse_args()

    try:
        check_dependencies()

        page_selection = PageSelection.DROP_LAST if args.drop_last else PageSelection.KEEP_ALL
        config = BatchConfig(args.directory, page_selection=page_selection, quality=args.quality,
                             batch_size=args.batch_size, max_workers=args.workers)
        try:
            config.validate()
        except ValueError as e:
            print(f"Error: {e}")
            sys.exit(1)

        print("CBR2PDF v1.0")
        print("-" * 50)
        print(f"Directory: {config.target_dir}")
        print(f"Pages: {'drop last' if args.drop_last else 'keep all'}")
        print(f"Quality: {config.quality}")
        print(f"Workers: {config.max_workers or 'auto'}")
        print("-" * 50)

        coordinator = BatchCoordinator(config)
        results = coordinator.run()

        print("-" * 50)
        if not results:
            print(f"No supported comic files found in: {config.target_dir}")
            print(f"Supported formats: {', '.join(sorted(SUPPORTED_EXTENSIONS))}")
            return

        converted = sum(1 for r in results if r.success)
        print(f"Successfully converted: {converted}/{len(results)} files")
        if coordinator.failure_log:
            print("\nFailed files:")
            for source, reason in sorted(coordinator.failure_log.items()):
                print(f"  - {Path(source).name}: {reason}")
            sys.exit(1)

    except KeyboardInterrupt:
        print("\nConversion cancelled by user")
        sys.exit(1)


if __name__ == "__main__":
    main()
