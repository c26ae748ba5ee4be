import io
import logging
import os
import shutil
from datetime import datetime
from typing import BinaryIO, Union

logger = logging.getLogger(__name__)


def dated_output_dir(output_dir: str = "outputs") -> str:
    """Pure function giving the yy-mm-dd subdirectory of output_dir for today."""
    return os.path.join(output_dir, datetime.now().strftime("%y-%m-%d"))


def save_media(filename: str, media: Union[str, BinaryIO, bytes], output_dir: str = "outputs") -> str:
    """
    Save media (images/videos) under output_dir/yy-mm-dd/.

    Args:
        filename (str): The filename for the media
        media (Union[str, BinaryIO, bytes]): The media content - can be a file path, file-like object, or bytes
        output_dir (str): Root directory for saved media

    Returns:
        str: Local file path of the saved media
    """
    local_dir = dated_output_dir(output_dir)
    os.makedirs(local_dir, exist_ok=True)
    local_path = os.path.join(local_dir, filename)

    if isinstance(media, str):
        if not os.path.exists(media):
            raise FileNotFoundError(f"Source file not found: {media}")
        shutil.copy2(media, local_path)
    elif isinstance(media, bytes):
        with open(local_path, 'wb') as f:
            f.write(media)
    elif hasattr(media, 'read'):
        with open(local_path, 'wb') as f:
            f.write(media.read())
    else:
        raise ValueError("Unsupported media type")

    logger.info(f"Saved locally: {local_path}")
    return local_path


def save_matplotlib_figure(
    filename: str,
    fig,
    format: str = 'png',
    dpi: int = 300,
    output_dir: str = "outputs"
) -> str:
    """
    Save a matplotlib figure under output_dir/yy-mm-dd/.

    Args:
        filename (str): The filename for the figure, extension added if missing
        fig: Matplotlib figure object
        format (str): Image format (png, jpg, svg, etc.)
        dpi (int): DPI for raster formats
        output_dir (str): Root directory for saved media

    Returns:
        str: Local file path of the saved figure
    """
    if not filename.lower().endswith(f'.{format}'):
        filename = f"{filename}.{format}"

    buffer = io.BytesIO()
    fig.savefig(buffer, format=format, dpi=dpi, bbox_inches='tight')
    buffer.seek(0)
    return save_media(filename, buffer, output_dir=output_dir)
