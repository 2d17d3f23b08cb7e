"""End-to-end flows through the wired engine."""

from convotag.models.db import TagRelation


class TestAnalysisToFeedback:
    """Append messages, let analysis run, then act on its recommendations."""

    def test_accept_recommended_tag(self, engine, fake_analyzer, owner_id):
        conversation = engine.conversations.create_conversation(
            owner_id, title="Planning my semester"
        )
        for role, content in [
            ("user", "How should I plan my study time?"),
            ("assistant", "Let's start with your goals."),
            ("user", "I want a weekly schedule."),
        ]:
            engine.conversations.append_message(conversation.id, role, content, tokens=8)

        assert engine.worker.drain() == 1
        assert len(fake_analyzer.calls) == 1
        assert len(fake_analyzer.calls[0].messages) == 3

        listing = engine.recommendations.list_recommendations(conversation.id, owner_id)
        assert [(i.tag_name, i.confidence_score) for i in listing.items] == [
            ("learning_strategy", 0.82)
        ]
        rec = listing.items[0]

        result = engine.recommendations.apply_feedback(
            conversation.id,
            owner_id,
            rec.tag_id,
            "accepted",
            analysis_revision=listing.analysis_revision,
        )
        assert result.tag_relation_created is True

        with engine.database.session_scope() as session:
            relations = (
                session.query(TagRelation)
                .filter(TagRelation.conversation_id == conversation.id)
                .all()
            )
            assert len(relations) == 1
            assert relations[0].applied_by == "user"
            assert relations[0].tag_id == rec.tag_id

        resolved = engine.recommendations.list_recommendations(
            conversation.id, owner_id, include_resolved=True
        ).items
        assert [r.user_feedback for r in resolved] == ["accepted"]

        detail = engine.conversations.get_conversation(conversation.id, owner_id)
        assert detail.message_count == 3
        assert detail.total_tokens == 24
        assert detail.summary == "Discussion of learning strategy"
        assert [t.name for t in detail.tags] == ["learning_strategy"]

    def test_tenth_message_refreshes_analysis(self, engine, fake_analyzer, owner_id, add_messages):
        conversation = engine.conversations.create_conversation(owner_id)
        add_messages(conversation.id, 3)
        assert engine.worker.drain() == 1

        add_messages(conversation.id, 6)
        assert engine.worker.drain() == 0

        add_messages(conversation.id, 1)
        assert engine.worker.drain() == 1

        assert len(fake_analyzer.calls) == 2
        assert len(fake_analyzer.calls[1].messages) == 10
        result = engine.analysis.get_result(conversation.id, owner_id)
        assert result.revision == 2

    def test_health(self, engine):
        health = engine.health()

        assert health["database"] is True
        assert health["worker"]["running"] is False
        assert "hit_rate" in health["cache"]
