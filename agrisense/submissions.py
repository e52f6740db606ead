"""
Submission intake and the read side polled by the client.
"""
from datetime import datetime
from typing import Dict, List, Optional

import pydantic

from .config import settings
from .database import Database, generate_submission_key, utcnow
from .errors import NotFoundError, ValidationError
from .geometry import calculate_area_hectares, ring_center
from .image_storage import decode_data_uri, is_data_uri, save_field_image
from .logging_config import get_logger, log_context
from .models import SubmissionIn
from .orchestrator import rollup_submission

logger = get_logger(__name__)

STATUS_MESSAGES = {
    'pending': 'Waiting for AI processing...',
    'processing': 'AI is analyzing your field...',
}


# ============================================
# INTAKE
# ============================================

def _error_path(location) -> str:
    return '.'.join(str(part) for part in location) or 'body'


def parse_submission(raw) -> SubmissionIn:
    """
    Validate a raw submission body

    Raises:
        ValidationError: with messages keyed by dotted field path
    """
    if not isinstance(raw, dict):
        raise ValidationError({'body': ['Request body must be a JSON object']})
    try:
        submission = SubmissionIn.model_validate(raw)
    except pydantic.ValidationError as e:
        errors: Dict[str, List[str]] = {}
        for error in e.errors():
            errors.setdefault(_error_path(error['loc']), []).append(error['msg'])
        raise ValidationError(errors) from e

    image_errors = {}
    for index, field in enumerate(submission.fields):
        if field.image and is_data_uri(field.image):
            try:
                decode_data_uri(field.image)
            except ValueError as e:
                image_errors[f'fields.{index}.image'] = [str(e)]
    if image_errors:
        raise ValidationError(image_errors)

    return submission


def _store_image(image: Optional[str], submission_key: str, index: int) -> Optional[str]:
    if not image:
        return None
    if is_data_uri(image) and settings.image_upload_enabled:
        ext, content = decode_data_uri(image)
        return save_field_image(content, ext, submission_key, index)
    return image


def create_submission(database: Database, submission: SubmissionIn, request_meta: Optional[Dict] = None) -> Dict:
    """
    Persist a validated submission with all of its fields

    Areas are always computed from the coordinate rings. Returns the response
    `data` block for the client.
    """
    submission_key = generate_submission_key()
    location = submission.user_location

    fields = []
    total_area = 0.0
    for index, field in enumerate(submission.fields):
        area = calculate_area_hectares(field.coordinates)
        total_area += area
        center_lat, center_lng = field.center if field.center else ring_center(field.coordinates)
        fields.append({
            'name': field.name,
            'coordinates': field.coordinates,
            'center_lat': center_lat,
            'center_lng': center_lng,
            'area_hectares': area,
            'region': field.region,
            'country': field.country,
            'crop': field.crop,
            'variety': field.variety,
            'image': _store_image(field.image, submission_key, index),
            'user_lat': location.lat if location else None,
            'user_lng': location.lng if location else None,
        })

    total_area = round(total_area, 4)
    metadata = dict(request_meta or {})
    metadata['submission_method'] = metadata.get('submission_method', 'field_mapping_interface')
    metadata['fields_data'] = [
        field.model_dump(exclude={'image'}) for field in submission.fields
    ]

    row = database.create_submission({
        'unique_submission_key': submission_key,
        'region': submission.region,
        'zone': submission.zone,
        'user_lat': location.lat if location else None,
        'user_lng': location.lng if location else None,
        'user_location_accuracy': location.accuracy if location else None,
        'total_area_hectares': total_area,
        'submission_metadata': metadata,
    }, fields)

    logger.info(
        "Submission created successfully",
        extra=log_context(submission_id=row['id'], submission_key=row['unique_submission_key'],
                          field_count=row['total_fields'], total_area=total_area,
                          region=submission.region, zone=submission.zone)
    )

    return {
        'submission_id': row['id'],
        'unique_submission_key': row['unique_submission_key'],
        'total_fields': row['total_fields'],
        'total_area_hectares': row['total_area_hectares'],
        'region': row['region'],
        'zone': row['zone'],
        'saved_at': utcnow().isoformat(),
    }


# ============================================
# PREDICTION VIEWS
# ============================================

def risk_level(score: Optional[float]) -> Optional[str]:
    if score is None:
        return None
    if score <= 25:
        return 'Low'
    if score <= 50:
        return 'Medium'
    if score <= 75:
        return 'High'
    return 'Very High'


def formatted_yield(value: Optional[float], unit: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return f"{value:.1f} {unit or 'tons/ha'}"


def processing_duration_seconds(prediction: Dict) -> Optional[int]:
    started = prediction.get('processing_started_at')
    completed = prediction.get('processing_completed_at')
    if not started or not completed:
        return None
    delta = datetime.fromisoformat(completed) - datetime.fromisoformat(started)
    return int(delta.total_seconds())


def serialize_prediction(prediction: Dict) -> Dict:
    """Prediction row plus the derived display attributes"""
    data = dict(prediction)
    data['risk_level'] = risk_level(prediction.get('overall_risk_score'))
    data['formatted_yield'] = formatted_yield(prediction.get('predicted_yield'), prediction.get('yield_unit'))
    data['processing_duration_seconds'] = processing_duration_seconds(prediction)
    return data


def submission_info(submission: Dict) -> Dict:
    return {
        'total_fields': submission['total_fields'],
        'total_area': submission['total_area_hectares'],
        'user_location': {
            'lat': submission['user_lat'],
            'lng': submission['user_lng'],
            'accuracy': submission['user_location_accuracy'],
        },
        'status': submission['status'],
        'processed_at': submission['processed_at'],
    }


def field_prediction_view(submission: Dict, field: Dict, prediction: Dict) -> Dict:
    """Flattened field + completed prediction, as shown on the prediction page"""
    view = {
        'submission_id': submission['id'],
        'submission_key': submission['unique_submission_key'],
        'field_id': field['id'],
        'field_name': field['name'],
        'crop': field['crop'] or 'Unknown',
        'variety': field['variety'] or 'Unknown',
        'region': field['region'],
        'zone': submission['zone'],
        'area_hectares': field['area_hectares'],
    }
    prediction_data = serialize_prediction(prediction)
    for key in ('id', 'field_id', 'submission_id', 'created_at', 'updated_at'):
        prediction_data.pop(key, None)
    view.update(prediction_data)
    view['submission_info'] = submission_info(submission)
    view['created_at'] = field['created_at']
    return view


def _load(database: Database, submission_key: str):
    submission = database.get_submission_by_key(submission_key)
    if submission is None:
        raise NotFoundError('Submission not found')
    return submission


def get_prediction_status(database: Database, submission_key: str) -> Dict:
    """
    Per-field prediction status for a submission

    Rolls the submission status up before reading it, so repeated calls
    with no intervening change return the same payload.

    Raises:
        NotFoundError: unknown submission key
    """
    submission = _load(database, submission_key)
    rollup_submission(database, submission['id'])
    submission = database.get_submission(submission['id'])

    fields = database.get_fields(submission['id'])
    predictions = database.get_predictions_for_submission(submission['id'])

    entries = []
    all_completed = bool(fields)
    any_failed = False

    for field in fields:
        prediction = predictions.get(field['id'])
        status = prediction['processing_status'] if prediction else 'pending'
        entry = {
            'field_id': field['id'],
            'field_name': field['name'],
            'status': status,
        }

        if status == 'completed':
            entry.update({
                'crop': field['crop'],
                'variety': field['variety'],
                'region': field['region'],
                'prediction': serialize_prediction(prediction),
            })
        elif status == 'failed':
            any_failed = True
            all_completed = False
            entry['message'] = f"AI processing failed: {prediction['processing_error']}"
            entry['error'] = prediction['processing_error']
        else:
            all_completed = False
            entry['message'] = STATUS_MESSAGES[status]

        entries.append(entry)

    return {
        'success': True,
        'submission': {
            'id': submission['id'],
            'unique_key': submission['unique_submission_key'],
            'status': submission['status'],
            'total_fields': submission['total_fields'],
            'total_area_hectares': submission['total_area_hectares'],
            'region': submission['region'],
            'zone': submission['zone'],
            'all_completed': all_completed,
            'any_failed': any_failed,
        },
        'predictions': entries,
    }


def get_submission_prediction(database: Database, submission_key: str) -> Dict:
    """
    First completed field prediction of a submission

    While fields are still unresolved and none has completed, returns a
    processing indicator instead.

    Raises:
        NotFoundError: unknown key, or every field failed
    """
    submission = _load(database, submission_key)
    fields = database.get_fields(submission['id'])
    predictions = database.get_predictions_for_submission(submission['id'])

    for field in fields:
        prediction = predictions.get(field['id'])
        if prediction and prediction['processing_status'] == 'completed':
            return {'success': True, 'data': field_prediction_view(submission, field, prediction)}

    waiting = []
    for field in fields:
        prediction = predictions.get(field['id'])
        status = prediction['processing_status'] if prediction else 'pending'
        if status in STATUS_MESSAGES:
            waiting.append({
                'field_id': field['id'],
                'field_name': field['name'],
                'status': status,
                'message': STATUS_MESSAGES[status],
            })

    if waiting:
        return {
            'success': True,
            'data': None,
            'processing': True,
            'predictions': waiting,
            'message': 'Predictions are still being processed',
        }

    raise NotFoundError('No completed predictions found for this submission')


def get_latest_predictions(database: Database, limit: int = 10) -> List[Dict]:
    """Completed predictions of the most recent submissions, one entry per field"""
    results = []
    for submission in database.get_latest_submissions(limit):
        predictions = database.get_predictions_for_submission(submission['id'])
        for field in database.get_fields(submission['id']):
            prediction = predictions.get(field['id'])
            if prediction and prediction['processing_status'] == 'completed':
                results.append(field_prediction_view(submission, field, prediction))
    return results
