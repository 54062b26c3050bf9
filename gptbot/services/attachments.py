# текст из документов и картинки для запроса к модели

from __future__ import annotations

import base64
import io
from typing import Any

import docx
import PyPDF2

PDF_MIME = "application/pdf"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
TEXT_EXTENSIONS = (".txt", ".md", ".csv", ".json", ".log")

DEFAULT_IMAGE_PROMPT = "Опиши, что изображено на картинке."
DEFAULT_DOCUMENT_PROMPT = "Кратко перескажи содержание документа."


class AttachmentError(ValueError):
    """Вложение не подходит. Текст исключения показываем пользователю."""


def check_size(size: int | None, limit: int) -> None:
    if size is not None and size > limit:
        raise AttachmentError(
            f"Файл слишком большой: {size // 1024} КБ. Максимум {limit // (1024 * 1024)} МБ."
        )


def _pdf_text(data: bytes) -> str:
    reader = PyPDF2.PdfReader(io.BytesIO(data))
    return "\n".join((page.extract_text() or "") for page in reader.pages)


def _docx_text(data: bytes) -> str:
    document = docx.Document(io.BytesIO(data))
    return "\n".join(p.text for p in document.paragraphs)


def extract_document_text(data: bytes, mime_type: str | None, file_name: str | None, max_chars: int) -> str:
    mime = (mime_type or "").lower()
    name = (file_name or "").lower()

    try:
        if mime == PDF_MIME or name.endswith(".pdf"):
            text = _pdf_text(data)
        elif mime == DOCX_MIME or name.endswith(".docx"):
            text = _docx_text(data)
        elif mime.startswith("text/") or name.endswith(TEXT_EXTENSIONS):
            text = data.decode("utf-8", errors="replace")
        else:
            raise AttachmentError("Этот тип файла не поддерживается. Пришлите PDF, DOCX или текстовый файл.")
    except AttachmentError:
        raise
    except Exception as e:
        raise AttachmentError("Не удалось прочитать файл. Возможно, он поврежден.") from e

    text = text.strip()
    if not text:
        raise AttachmentError("В файле не нашлось текста.")
    return text[:max_chars]


def build_document_prompt(caption: str | None, file_name: str | None, text: str) -> str:
    question = (caption or "").strip() or DEFAULT_DOCUMENT_PROMPT
    return f"{question}\n\nДокумент «{file_name or 'без имени'}»:\n\n{text}"


def build_image_content(caption: str | None, image: bytes, mime_type: str = "image/jpeg") -> list[dict[str, Any]]:
    question = (caption or "").strip() or DEFAULT_IMAGE_PROMPT
    data_url = f"data:{mime_type};base64," + base64.b64encode(image).decode("ascii")
    return [
        {"type": "text", "text": question},
        {"type": "image_url", "image_url": {"url": data_url}},
    ]
