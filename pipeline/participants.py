from pipeline.vrf import validate_identifier


class ParticipantSet:
    """Append-only, insertion-ordered set of participant ids."""

    def __init__(self):
        self._members: dict[str, None] = {}

    def add(self, participant_id: str) -> int:
        participant_id = validate_identifier(participant_id, "participant_id")
        self._members.setdefault(participant_id, None)
        return len(self._members)

    def snapshot(self) -> tuple[str, ...]:
        return tuple(self._members)

    def __contains__(self, participant_id: object) -> bool:
        return participant_id in self._members

    def __len__(self) -> int:
        return len(self._members)


class ParticipantRegistry:
    def __init__(self):
        self._sets: dict[str, ParticipantSet] = {}

    def open(self, session_id: str) -> ParticipantSet:
        return self._sets.setdefault(session_id, ParticipantSet())

    def close(self, session_id: str) -> None:
        self._sets.pop(session_id, None)

    def join(self, session_id: str, participant_id: str) -> int:
        members = self._sets.get(session_id)
        if members is None:
            raise KeyError(session_id)
        return members.add(participant_id)

    def snapshot(self, session_id: str) -> tuple[str, ...]:
        members = self._sets.get(session_id)
        if members is None:
            return ()
        return members.snapshot()

    def count(self, session_id: str) -> int:
        members = self._sets.get(session_id)
        return 0 if members is None else len(members)
