"""
Shared test data builders
"""

from typing import List

# Header as published by NYC Open Data (normalized by the extractor)
CSV_HEADER = [
    "Unique Key",
    "Created Date",
    "Closed Date",
    "Complaint Type",
    "Descriptor",
    "Borough",
    "Latitude",
    "Longitude",
]


def make_row(
    unique_key,
    created="2025-01-15 09:30:00",
    closed="",
    complaint_type="Noise",
    descriptor="Loud Music",
    borough="MANHATTAN",
    latitude="40.7580",
    longitude="-73.9855",
) -> List[str]:
    """One CSV row in header order"""
    return [str(unique_key), created, closed, complaint_type, descriptor, borough, latitude, longitude]
