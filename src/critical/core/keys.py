"""Option keys accepted by ``generate`` and the CLI, kept in one place to avoid magic strings."""

from __future__ import annotations

# Source selection
K_HTML = "html"
K_SRC = "src"
K_CSS = "css"
K_BASE = "base"
K_FOLDER = "folder"

# Behaviour flags
K_STRICT = "strict"
K_EXTRACT = "extract"
K_INLINE = "inline"
K_INLINE_IMAGES = "inline_images"
K_IGNORE_INLINED_STYLES = "ignore_inlined_styles"
K_MINIFY = "minify"

# Viewports
K_WIDTH = "width"
K_HEIGHT = "height"
K_DIMENSIONS = "dimensions"

# Post-processing
K_IGNORE = "ignore"
K_INCLUDE = "include"
K_POSTPROCESS = "postprocess"
K_MAX_IMAGE_FILE_SIZE = "max_image_file_size"
K_ASSET_PATHS = "asset_paths"
K_PATH_PREFIX = "path_prefix"

# Network
K_USER = "user"
K_PASS = "password"
K_USER_AGENT = "user_agent"
K_REQUEST = "request"
K_CONCURRENCY = "concurrency"
K_TIMEOUT = "timeout"

# Renderer / output wiring
K_RENDER = "render"
K_REBASE = "rebase"
K_TARGET = "target"

# Nested keys
K_FROM = "from"
K_TO = "to"
K_UNCRITICAL = "uncritical"
K_STRATEGY = "strategy"
K_REPLACE_STYLESHEETS = "replace_stylesheets"
K_BASE_PATH = "base_path"
K_ATRULE = "atrule"
K_RULE = "rule"
K_DECL = "decl"

# camelCase spellings accepted for compatibility with existing configs.
K_ALIASES = {
    "inlineImages": K_INLINE_IMAGES,
    "ignoreInlinedStyles": K_IGNORE_INLINED_STYLES,
    "maxImageFileSize": K_MAX_IMAGE_FILE_SIZE,
    "assetPaths": K_ASSET_PATHS,
    "pathPrefix": K_PATH_PREFIX,
    "userAgent": K_USER_AGENT,
    "pass": K_PASS,
    "penthouse": K_RENDER,
    "postcss": K_POSTPROCESS,
    "replaceStylesheets": K_REPLACE_STYLESHEETS,
    "basePath": K_BASE_PATH,
    "forceInclude": "force_include",
    "maxEmbeddedBase64Length": "max_embedded_base64_length",
    "keepLargerMediaQueries": "keep_larger_media_queries",
    "customPageHeaders": "custom_page_headers",
    "followRedirect": "follow_redirects",
    "rejectUnauthorized": "verify_ssl",
}
