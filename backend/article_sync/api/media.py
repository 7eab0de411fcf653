"""
Rehosted media API
"""
from flask import Blueprint, current_app, send_from_directory

from ..services.factory import build_storage
from ..utils.responses import ApiResponse

media_bp = Blueprint('media', __name__)


@media_bp.route('/media/<path:filename>', methods=['GET'])
def get_media(filename):
    """Serve a rehosted media file by its content-addressed name"""
    storage = build_storage(current_app.config)
    # Stored names are flat; anything with a directory part is not ours
    if '/' in filename or '\\' in filename or not storage.exists(filename):
        return ApiResponse.not_found('media not found')

    response = send_from_directory(storage.root, filename)
    # Names are content hashes, so a given URL never changes
    response.cache_control.public = True
    response.cache_control.max_age = 31536000
    return response
