"""Document loaders for uploaded files.

Handles:
- PDF text extraction, one document per page
- OCR for image uploads
- OCR fallback for PDFs without a text layer (scanned documents)
"""
from pathlib import Path
from typing import List, Optional
import structlog
import pytesseract
from langchain_core.documents import Document
from pdf2image import convert_from_path
from PIL import Image
from pypdf import PdfReader

from docchat import config

logger = structlog.get_logger()

PDF_EXTENSIONS = {".pdf"}
IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg"}
SUPPORTED_EXTENSIONS = PDF_EXTENSIONS | IMAGE_EXTENSIONS


class UnsupportedFileType(ValueError):
    """Raised for uploads that are neither PDFs nor images."""


class DocumentLoadError(RuntimeError):
    """Raised when a supported file cannot be read."""


def is_pdf(file_path: Path) -> bool:
    return Path(file_path).suffix.lower() in PDF_EXTENSIONS


def is_image(file_path: Path) -> bool:
    return Path(file_path).suffix.lower() in IMAGE_EXTENSIONS


def is_supported(file_path: Path) -> bool:
    return Path(file_path).suffix.lower() in SUPPORTED_EXTENSIONS


class DocumentLoader:
    """Turns an uploaded file into LangChain documents."""

    def __init__(self, ocr_language: str = None, ocr_dpi: int = None):
        """Initialize the loader.

        Args:
            ocr_language: Tesseract language code(s), e.g. "eng" or "eng+deu"
            ocr_dpi: Resolution used when rasterising PDF pages for OCR
        """
        self.ocr_language = ocr_language or config.OCR_LANGUAGE
        self.ocr_dpi = ocr_dpi or config.OCR_DPI

    def load(self, file_path: Path, source_name: Optional[str] = None) -> List[Document]:
        """Load a PDF or image, falling back to OCR for text-less PDFs.

        Args:
            file_path: Path to the file on disk
            source_name: Name recorded as the document source (defaults to file name)

        Returns:
            List of documents (may contain blank text if OCR finds nothing)

        Raises:
            UnsupportedFileType: If the extension is not supported
            DocumentLoadError: If the file cannot be parsed
        """
        file_path = Path(file_path)
        source = source_name or file_path.name

        if is_pdf(file_path):
            docs = self.load_pdf_text(file_path, source)
        elif is_image(file_path):
            logger.warning("image_file_detected_using_ocr", source=source)
            docs = [self.ocr_image(file_path, source)]
        else:
            raise UnsupportedFileType(f"Unsupported file type: {file_path.suffix or 'none'}")

        if is_pdf(file_path) and all(not doc.page_content.strip() for doc in docs):
            logger.warning("pdf_has_no_extractable_text_falling_back_to_ocr", source=source)
            docs = [self.ocr_pdf(file_path, source)]

        logger.info(
            "document_loaded",
            source=source,
            documents=len(docs),
            total_chars=sum(len(doc.page_content) for doc in docs),
        )
        return docs

    def load_pdf_text(self, file_path: Path, source: str) -> List[Document]:
        """Extract the text layer of each PDF page."""
        try:
            reader = PdfReader(str(file_path))
            docs = []
            for page_number, page in enumerate(reader.pages, 1):
                docs.append(
                    Document(
                        page_content=page.extract_text() or "",
                        metadata={"source": source, "page": page_number, "type": "pdf"},
                    )
                )
            return docs
        except Exception as e:
            logger.error("pdf_text_extraction_failed", source=source, error=str(e))
            raise DocumentLoadError(f"Failed to read PDF {source}: {e}") from e

    def ocr_image(self, file_path: Path, source: str) -> Document:
        """Run OCR over a single image file."""
        try:
            with Image.open(file_path) as image:
                text = pytesseract.image_to_string(image, lang=self.ocr_language) or ""
        except Exception as e:
            logger.error("image_ocr_failed", source=source, error=str(e))
            raise DocumentLoadError(f"Failed to OCR image {source}: {e}") from e

        logger.info("ocr_processed", source=source, chars=len(text))
        return Document(page_content=text, metadata={"source": source, "type": "ocr"})

    def ocr_pdf(self, file_path: Path, source: str) -> Document:
        """Rasterise every PDF page and OCR them in page order."""
        try:
            images = convert_from_path(str(file_path), dpi=self.ocr_dpi)
        except Exception as e:
            logger.error("pdf_rasterisation_failed", source=source, error=str(e))
            raise DocumentLoadError(f"Failed to convert PDF {source} to images: {e}") from e

        page_texts = []
        try:
            for page_number, image in enumerate(images, 1):
                text = pytesseract.image_to_string(image, lang=self.ocr_language) or ""
                page_texts.append(text)
                logger.info("ocr_processed", source=source, page=page_number, chars=len(text))
        except Exception as e:
            logger.error("pdf_ocr_failed", source=source, error=str(e))
            raise DocumentLoadError(f"Failed to OCR PDF {source}: {e}") from e
        finally:
            for image in images:
                image.close()

        return Document(
            page_content="\n".join(page_texts),
            metadata={"source": source, "type": "ocr", "pages": len(images)},
        )
