"""题目图片的载荷处理：上传字节转 base64 / data URL，校验调用方传来的 base64 图片。"""
import base64
import binascii

from llm_runner import split_data_url

# 允许的题目图片类型
ALLOWED_IMAGE_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp"}


def image_to_base64(image_bytes: bytes) -> str:
    """将图片二进制内容转为 base64 字符串。"""
    if not image_bytes or len(image_bytes) == 0:
        raise ValueError("图片内容为空")
    return base64.standard_b64encode(image_bytes).decode("ascii")


def to_data_url(image_bytes: bytes, mime_type: str = "image/jpeg") -> str:
    if mime_type not in ALLOWED_IMAGE_TYPES:
        raise ValueError(f"不支持的图片类型，仅支持: {', '.join(sorted(ALLOWED_IMAGE_TYPES))}")
    return f"data:{mime_type};base64,{image_to_base64(image_bytes)}"


def normalize_image_payload(image: str) -> str:
    """
    接受裸 base64 或 data URL，校验类型与 base64 合法性后统一返回 data URL。
    :raises ValueError: 为空、类型不支持或不是合法 base64
    """
    image = (image or "").strip()
    if not image:
        raise ValueError("图片内容为空")
    mime_type, b64 = split_data_url(image)
    if mime_type not in ALLOWED_IMAGE_TYPES:
        raise ValueError(f"不支持的图片类型，仅支持: {', '.join(sorted(ALLOWED_IMAGE_TYPES))}")
    try:
        decoded = base64.b64decode(b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError("图片不是合法的 base64") from e
    if not decoded:
        raise ValueError("图片内容为空")
    return f"data:{mime_type};base64,{b64}"
