"""
Labels, annotations and protocol tables shared across the control plane.
"""

LABEL_APP_NAME = "app.kubernetes.io/name"
LABEL_COMPONENT = "app.kubernetes.io/component"
LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"
LABEL_INSTANCE = "app.kubernetes.io/instance"
LABEL_PART_OF = "app.kubernetes.io/part-of"

APP_NAME = "file-simulator"
PART_OF = "file-simulator-suite"
CONTROL_PLANE_COMPONENT = "control-api"
MANAGED_BY_CONTROL_PLANE = "control-plane"
MANAGED_BY_TEMPLATE = "platform-template"

ANNOTATION_SERVER_NAME = "file-simulator.io/server-name"
ANNOTATION_DIRECTORY = "file-simulator.io/directory"

APP_SELECTOR = f"{LABEL_APP_NAME}={APP_NAME}"

# Order matters, more specific keys must come first (sftp before ftp, webdav/management before http).
PROTOCOL_MAPPINGS = (
    ("management", "Management"),
    ("sftp", "SFTP"),
    ("ftp", "FTP"),
    ("nas", "NFS"),
    ("nfs", "NFS"),
    ("webdav", "WebDAV"),
    ("http", "HTTP"),
    ("s3", "S3"),
    ("smb", "SMB"),
)

NAS_DIRECTORY_PRESETS = {
    "input": "nas-input-dynamic",
    "output": "nas-output-dynamic",
    "backup": "nas-backup-dynamic",
}

DEFAULT_NFS_EXPORT_OPTIONS = "rw,sync,no_subtree_check,no_root_squash"
NAME_PATTERN = r"^[a-z0-9-]+$"
