"""
Data models (plain dataclasses) for CheckpointQuiz.
Serialised with the camelCase keys used in storage.
"""

from dataclasses import dataclass, field
from typing import Optional

from checkpoint_quiz.core.constants import UnitStatus


@dataclass
class TranscriptEntry:
    start: float
    end: float
    duration: float
    text: str

    def to_dict(self) -> dict:
        return {'start': self.start, 'end': self.end,
                'duration': self.duration, 'text': self.text}

    @classmethod
    def from_dict(cls, data: dict) -> "TranscriptEntry":
        start = float(data['start'])
        duration = float(data.get('duration') or 0)
        end = float(data['end']) if data.get('end') is not None else start + duration
        return cls(start=start, end=end, duration=duration, text=str(data.get('text', '')))


@dataclass
class Question:
    question: str
    options: list[str]
    correct: int

    def __post_init__(self):
        if len(self.options) < 2:
            raise ValueError(f"Question needs at least 2 options, got {len(self.options)}")
        if not 0 <= self.correct < len(self.options):
            raise ValueError(f"Correct index {self.correct} out of range for {len(self.options)} options")

    def to_dict(self) -> dict:
        return {'question': self.question, 'options': list(self.options), 'correct': self.correct}

    @classmethod
    def from_dict(cls, data: dict) -> "Question":
        return cls(
            question=str(data['question']),
            options=[str(o) for o in data['options']],
            correct=int(data.get('correct', 0)),
        )


@dataclass
class Segment:
    start: float
    end: float
    text: str
    entries: list[TranscriptEntry] = field(default_factory=list)
    questions: Optional[list[Question]] = None
    status: str = UnitStatus.PENDING
    error_message: str = ""

    @property
    def has_questions(self) -> bool:
        return bool(self.questions)

    def to_dict(self) -> dict:
        return {
            'start': self.start,
            'end': self.end,
            'text': self.text,
            'entries': [e.to_dict() for e in self.entries],
            'questions': [q.to_dict() for q in self.questions] if self.questions is not None else None,
            'status': self.status,
            'errorMessage': self.error_message,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Segment":
        questions = data.get('questions')
        return cls(
            start=float(data['start']),
            end=float(data['end']),
            text=str(data.get('text', '')),
            entries=[TranscriptEntry.from_dict(e) for e in data.get('entries') or []],
            questions=[Question.from_dict(q) for q in questions] if questions is not None else None,
            status=data.get('status') or UnitStatus.PENDING,
            error_message=data.get('errorMessage') or '',
        )


@dataclass
class SegmentStatusRecord:
    index: int
    status: str = UnitStatus.PENDING
    question_count: int = 0
    target: int = 1
    message: str = ""

    def to_dict(self) -> dict:
        return {'index': self.index, 'status': self.status,
                'questionCount': self.question_count, 'target': self.target,
                'message': self.message}

    @classmethod
    def from_dict(cls, data: dict) -> "SegmentStatusRecord":
        return cls(
            index=int(data['index']),
            status=data.get('status') or UnitStatus.PENDING,
            question_count=int(data.get('questionCount') or 0),
            target=int(data.get('target') or 1),
            message=data.get('message') or '',
        )


@dataclass
class FinalStatusRecord:
    status: str = UnitStatus.PENDING
    question_count: int = 0
    target: int = 0                  # 0 until a target has been drawn
    message: str = ""

    def to_dict(self) -> dict:
        return {'status': self.status, 'questionCount': self.question_count,
                'target': self.target, 'message': self.message}

    @classmethod
    def from_dict(cls, data: dict) -> "FinalStatusRecord":
        return cls(
            status=data.get('status') or UnitStatus.SKIPPED,
            question_count=int(data.get('questionCount') or 0),
            target=int(data.get('target') or 0),
            message=data.get('message') or '',
        )


@dataclass
class GenerationStatus:
    video_id: str
    video_title: str = ""
    updated_at: int = 0
    overall_status: str = ""
    segments: list[SegmentStatusRecord] = field(default_factory=list)
    final: FinalStatusRecord = field(default_factory=FinalStatusRecord)

    def to_dict(self) -> dict:
        return {
            'videoId': self.video_id,
            'videoTitle': self.video_title,
            'updatedAt': self.updated_at,
            'overallStatus': self.overall_status,
            'segments': [s.to_dict() for s in self.segments],
            'final': self.final.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "GenerationStatus":
        final = data.get('final')
        return cls(
            video_id=data.get('videoId') or '',
            video_title=data.get('videoTitle') or '',
            updated_at=int(data.get('updatedAt') or 0),
            overall_status=data.get('overallStatus') or '',
            segments=[SegmentStatusRecord.from_dict(s) for s in data.get('segments') or []],
            final=FinalStatusRecord.from_dict(final) if isinstance(final, dict) else FinalStatusRecord(),
        )


@dataclass
class CacheEntry:
    version: str
    timestamp: int                   # epoch milliseconds
    segment_count: int
    segments: list[Segment]
    final_quiz: Optional[list[Question]] = None
    status_snapshot: Optional[GenerationStatus] = None

    def to_dict(self) -> dict:
        return {
            'version': self.version,
            'timestamp': self.timestamp,
            'segmentCount': self.segment_count,
            'segments': [s.to_dict() for s in self.segments],
            'finalQuiz': [q.to_dict() for q in self.final_quiz] if self.final_quiz is not None else None,
            'statusSnapshot': self.status_snapshot.to_dict() if self.status_snapshot else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CacheEntry":
        final_quiz = data.get('finalQuiz')
        snapshot = data.get('statusSnapshot')
        return cls(
            version=data['version'],
            timestamp=int(data.get('timestamp') or 0),
            segment_count=int(data['segmentCount']),
            segments=[Segment.from_dict(s) for s in data['segments']],
            final_quiz=[Question.from_dict(q) for q in final_quiz] if final_quiz is not None else None,
            status_snapshot=GenerationStatus.from_dict(snapshot) if isinstance(snapshot, dict) else None,
        )
