"""Producer side of the pipeline.

The upload service owns this half of the contract: store the original,
create the pending ImageRecord, write the pending job status, then enqueue
the Job. Both are written before the job is visible to any worker.
"""

import mimetypes
import uuid
from pathlib import Path
from typing import Optional, Tuple

from loguru import logger

from .queue.models import ImageRecord, Job, JobStatus, ResolutionResult
from .resolutions import ORIGINAL, object_key
from .transformer import format_size_label


def enqueue_job(
    components,
    image_id: str,
    user_id: str,
    original_path: str,
    original_name: str,
    job_id: Optional[str] = None,
) -> str:
    """Enqueue a resize job for an already-stored original.

    Returns:
        The job_id (a new UUID unless one is passed in)
    """
    job = Job(
        job_id=job_id or str(uuid.uuid4()),
        image_id=image_id,
        user_id=user_id,
        original_path=original_path,
        original_name=original_name,
    )
    # Status first: a worker may finish the job as soon as it is visible
    components.status_store.set_status(job.job_id, JobStatus.PENDING)
    components.queue.enqueue(job)
    logger.bind(job_id=job.job_id, image_id=image_id, event="enqueued").info(
        "Enqueued {}", original_path
    )
    return job.job_id


def submit_image(
    components,
    user_id: str,
    original_name: str,
    data: bytes,
    content_type: Optional[str] = None,
) -> Tuple[str, str]:
    """Upload an original and queue it for resizing.

    Args:
        components: Built pipeline components (see pipeline.build_components)
        user_id: Owner of the image
        original_name: Client-side file name; its extension names every variant
        data: Encoded image bytes
        content_type: MIME type; guessed from the file name when omitted

    Returns:
        (image_id, job_id)
    """
    image_id = str(uuid.uuid4())
    ext = Path(original_name).suffix.lower()
    key = object_key(ORIGINAL, user_id, image_id, ext)
    content_type = content_type or mimetypes.guess_type(original_name)[0] or "application/octet-stream"

    url = components.object_store.put(components.config.storage.bucket, key, data, content_type)

    components.record_store.create(
        ImageRecord(
            image_id=image_id,
            user_id=user_id,
            original_name=original_name,
            status=JobStatus.PENDING,
            # Dimensions are filled in by the worker
            sizes={
                ORIGINAL: ResolutionResult(
                    url=url, width=0, height=0, size_label=format_size_label(len(data), "MB")
                )
            },
        )
    )

    job_id = enqueue_job(components, image_id, user_id, key, original_name)
    return image_id, job_id
