"""
Scope tree: team root, project scopes and per-user private scopes.

A team has exactly one root scope (``scope_type=team``). Project scopes hang
off the root or off other project scopes. A private scope belongs to one
owner and shadows one public scope; the pairing lives in
``private_scope_links`` with a unique (owner, coupled scope) constraint, so
a private scope is never a tree child of the scope it shadows.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ravenloom.errors import ConfirmationRequired, InvalidParent, NotFound, PermissionDenied
from ravenloom.models import (
    Fact,
    FactKeyHead,
    LearningObjective,
    PrivateScopeLink,
    QuestionAssignee,
    RememberPreviewRecord,
    Scope,
    ScopeType,
    TeamQuestion,
)

logger = logging.getLogger(__name__)

_UNSET = object()


@dataclass
class ScopeNode:
    """A scope with its tree children and the viewer's private shadow."""

    scope: Scope
    children: List["ScopeNode"] = field(default_factory=list)
    private_scope: Optional[Scope] = None


class ScopeTree:
    """
    Hierarchical namespace of knowledge boundaries for a team.

    Args:
        db: SQLAlchemy session
    """

    def __init__(self, db: Session):
        self._db = db

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_scope(self, scope_id: uuid.UUID) -> Optional[Scope]:
        return self._db.query(Scope).filter(Scope.id == scope_id).first()

    def require_scope(self, scope_id: uuid.UUID) -> Scope:
        scope = self.get_scope(scope_id)
        if scope is None:
            raise NotFound("scope", scope_id)
        return scope

    def get_team_root(self, team_id: uuid.UUID) -> Optional[Scope]:
        return self._db.query(Scope).filter(Scope.root_team_id == team_id).first()

    def assert_can_access(self, scope: Scope, user_id: uuid.UUID) -> None:
        """Private scopes are visible to their owner only."""
        if scope.is_private and scope.owner_id != user_id:
            raise PermissionDenied(f"Scope {scope.id} is private to another user")

    def require_accessible(self, scope_id: uuid.UUID, user_id: uuid.UUID) -> Scope:
        scope = self.require_scope(scope_id)
        self.assert_can_access(scope, user_id)
        return scope

    def get_children(self, scope_id: uuid.UUID) -> List[Scope]:
        return (
            self._db.query(Scope)
            .filter(Scope.parent_scope_id == scope_id)
            .order_by(Scope.name.asc())
            .all()
        )

    def get_child_summaries(self, scope_id: uuid.UUID) -> List[Scope]:
        """Direct children with their summaries, for parent-scope awareness."""
        return self.get_children(scope_id)

    def get_ancestors(self, scope_id: uuid.UUID) -> List[Scope]:
        """
        Return the ancestors of a scope, root first, excluding the scope itself.

        A private scope inherits the ancestry of the public scope it shadows,
        with that public scope as its nearest ancestor.
        """
        scope = self.require_scope(scope_id)
        ancestors: List[Scope] = []
        seen: Set[uuid.UUID] = {scope.id}

        next_id = scope.coupled_scope_id if scope.is_private else scope.parent_scope_id
        while next_id is not None and next_id not in seen:
            parent = self.get_scope(next_id)
            if parent is None:
                break
            ancestors.insert(0, parent)
            seen.add(parent.id)
            next_id = parent.parent_scope_id
        return ancestors

    def get_path(self, scope_id: uuid.UUID) -> List[str]:
        """Breadcrumb of scope names from the team root to the scope."""
        scope = self.require_scope(scope_id)
        return [s.name for s in self.get_ancestors(scope_id)] + [scope.name]

    def get_search_scope_ids(
        self,
        scope_id: uuid.UUID,
        user_id: Optional[uuid.UUID] = None,
        include_private: bool = True,
    ) -> List[uuid.UUID]:
        """
        Scopes an Ask in ``scope_id`` reads from.

        The scope itself and its ancestors, plus (when ``include_private``)
        the user's private scopes coupled to any of them.
        """
        scope = self.require_scope(scope_id)
        ids = [scope.id] + [s.id for s in self.get_ancestors(scope_id)]

        if include_private and user_id is not None:
            links = (
                self._db.query(PrivateScopeLink.private_scope_id)
                .filter(
                    PrivateScopeLink.owner_id == user_id,
                    PrivateScopeLink.coupled_scope_id.in_(list(ids)),
                )
                .all()
            )
            for (private_id,) in links:
                if private_id not in ids:
                    ids.append(private_id)
        return ids

    def resolve_visible_scopes(self, team_id: uuid.UUID, user_id: uuid.UUID) -> List[Scope]:
        """All public scopes of the team plus the user's own private scopes."""
        return (
            self._db.query(Scope)
            .outerjoin(PrivateScopeLink, PrivateScopeLink.private_scope_id == Scope.id)
            .filter(Scope.team_id == team_id)
            .filter(
                or_(
                    Scope.scope_type != ScopeType.private,
                    (PrivateScopeLink.owner_id == user_id) & (Scope.owner_id == user_id),
                )
            )
            .order_by(Scope.created_at.asc())
            .all()
        )

    def list_private_scopes(self, team_id: uuid.UUID, owner_id: uuid.UUID) -> List[Scope]:
        return (
            self._db.query(Scope)
            .join(PrivateScopeLink, PrivateScopeLink.private_scope_id == Scope.id)
            .filter(Scope.team_id == team_id, PrivateScopeLink.owner_id == owner_id)
            .all()
        )

    def get_scope_tree(self, team_id: uuid.UUID, user_id: uuid.UUID) -> List[ScopeNode]:
        """Nested view of the visible scopes, private shadows attached to their public scope."""
        visible = self.resolve_visible_scopes(team_id, user_id)
        nodes: Dict[uuid.UUID, ScopeNode] = {
            s.id: ScopeNode(scope=s) for s in visible if not s.is_private
        }
        roots: List[ScopeNode] = []

        for node in nodes.values():
            parent_id = node.scope.parent_scope_id
            if parent_id is not None and parent_id in nodes:
                nodes[parent_id].children.append(node)
            else:
                roots.append(node)

        for scope in visible:
            if scope.is_private and scope.coupled_scope_id in nodes:
                nodes[scope.coupled_scope_id].private_scope = scope

        for node in nodes.values():
            node.children.sort(key=lambda n: n.scope.name.lower())
        return roots

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def initialize_team_scopes(
        self,
        team_id: uuid.UUID,
        team_name: str,
        created_by: Optional[uuid.UUID] = None,
    ) -> Scope:
        """Create the team root scope, or return it when it already exists."""
        existing = self.get_team_root(team_id)
        if existing is not None:
            return existing

        root = Scope(
            team_id=team_id,
            scope_type=ScopeType.team,
            name=team_name,
            description=f"Team-wide knowledge for {team_name}",
            root_team_id=team_id,
            created_by=created_by,
        )
        try:
            self._db.add(root)
            self._db.commit()
        except IntegrityError:
            self._db.rollback()
            existing = self.get_team_root(team_id)
            if existing is not None:
                logger.info("Concurrent root creation detected; using scope %s", existing.id)
                return existing
            raise

        logger.info("Initialized root scope %s for team %s", root.id, team_id)
        return root

    def create_scope(
        self,
        team_id: uuid.UUID,
        name: str,
        description: Optional[str] = None,
        parent_scope_id: Optional[uuid.UUID] = None,
        created_by: Optional[uuid.UUID] = None,
    ) -> Scope:
        """
        Create a project scope.

        Args:
            team_id: Owning team
            name: Scope name
            description: Optional description
            parent_scope_id: Parent scope; the team root when omitted
            created_by: Creating user

        Raises:
            InvalidParent: Parent missing, in another team, or private
            NotFound: No parent given and the team has no root scope
        """
        if parent_scope_id is None:
            parent = self.get_team_root(team_id)
            if parent is None:
                raise NotFound("team root scope", team_id)
        else:
            parent = self.get_scope(parent_scope_id)
            self._validate_parent(team_id, parent, parent_scope_id)

        scope = Scope(
            team_id=team_id,
            parent_scope_id=parent.id,
            scope_type=ScopeType.project,
            name=name.strip(),
            description=description,
            created_by=created_by,
        )
        self._db.add(scope)
        self._db.commit()
        self._db.refresh(scope)
        logger.info("Created scope %s under %s", scope.id, parent.id)
        return scope

    def update_scope(
        self,
        scope_id: uuid.UUID,
        name: Optional[str] = None,
        description: Optional[str] = None,
        summary: Optional[str] = None,
        parent_scope_id=_UNSET,
    ) -> Scope:
        """
        Update scope fields; reparenting is validated against cycles.

        Raises:
            InvalidParent: Self-parenting, cycles, cross-team or private
                parents, or moving the root or a private scope
        """
        scope = self.require_scope(scope_id)

        if parent_scope_id is not _UNSET and parent_scope_id != scope.parent_scope_id:
            if scope.scope_type != ScopeType.project:
                raise InvalidParent(f"A {scope.scope_type.value} scope cannot be moved")
            if parent_scope_id is None:
                raise InvalidParent("A project scope needs a parent")
            if parent_scope_id == scope.id:
                raise InvalidParent("A scope cannot be its own parent")
            parent = self.get_scope(parent_scope_id)
            self._validate_parent(scope.team_id, parent, parent_scope_id)
            if parent.id in self._descendant_ids(scope.id):
                raise InvalidParent("A scope cannot move under its own descendant")
            scope.parent_scope_id = parent.id

        if name is not None:
            scope.name = name.strip()
        if description is not None:
            scope.description = description
        if summary is not None:
            scope.summary = summary

        self._db.commit()
        self._db.refresh(scope)
        return scope

    def delete_scope(self, scope_id: uuid.UUID, confirm: bool = False) -> List[uuid.UUID]:
        """
        Delete a scope, its descendants and the private scopes coupled to them.

        Facts, key heads, previews, team questions and learning objectives
        in the deleted scopes go with them, in one transaction. This cannot
        be undone, so ``confirm`` must be True.

        Returns:
            Ids of every deleted scope
        """
        if not confirm:
            raise ConfirmationRequired(
                "Deleting a scope removes its sub-scopes and knowledge; pass confirm=true"
            )

        scope = self.require_scope(scope_id)
        if scope.scope_type == ScopeType.team:
            raise InvalidParent("The team root scope cannot be deleted")

        tree_ids = {scope.id} | self._descendant_ids(scope.id)
        private_ids = {
            private_id
            for (private_id,) in self._db.query(PrivateScopeLink.private_scope_id)
            .filter(PrivateScopeLink.coupled_scope_id.in_(tree_ids))
            .all()
        }
        doomed = list(tree_ids | private_ids)

        try:
            self._purge_scopes(doomed)
            self._db.commit()
        except Exception:
            self._db.rollback()
            raise

        logger.info("Deleted scope %s and %d related scopes", scope_id, len(doomed) - 1)
        return doomed

    def get_or_create_private_scope(
        self,
        team_id: uuid.UUID,
        owner_id: uuid.UUID,
        coupled_scope_id: uuid.UUID,
        owner_name: Optional[str] = None,
    ) -> Scope:
        """
        Return the owner's private scope shadowing a public scope, creating it once.

        Concurrent first calls for the same (owner, coupled scope) converge on
        a single row through the link table's unique constraint.

        Raises:
            NotFound: Coupled scope does not exist
            InvalidParent: Coupled scope is private or in another team
        """
        existing = self.find_private_scope(owner_id, coupled_scope_id)
        if existing is not None:
            return existing

        coupled = self.require_scope(coupled_scope_id)
        if coupled.team_id != team_id:
            raise InvalidParent(f"Scope {coupled_scope_id} belongs to another team")
        if coupled.is_private:
            raise InvalidParent("A private scope cannot shadow another private scope")

        private = Scope(
            id=uuid.uuid4(),
            team_id=team_id,
            scope_type=ScopeType.private,
            owner_id=owner_id,
            coupled_scope_id=coupled.id,
            name=owner_name.strip() if owner_name and owner_name.strip() else "Private",
            description=f"Private notes alongside {coupled.name}",
            created_by=owner_id,
        )
        try:
            self._db.add(private)
            self._db.flush()
            self._db.add(PrivateScopeLink(
                team_id=team_id,
                owner_id=owner_id,
                coupled_scope_id=coupled.id,
                private_scope_id=private.id,
            ))
            self._db.commit()
        except IntegrityError:
            self._db.rollback()
            existing = self.find_private_scope(owner_id, coupled_scope_id)
            if existing is not None:
                logger.warning(
                    "Concurrent private scope creation for owner %s / scope %s; using %s",
                    owner_id,
                    coupled_scope_id,
                    existing.id,
                )
                return existing
            raise

        logger.info("Created private scope %s for owner %s", private.id, owner_id)
        return private

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _validate_parent(
        self,
        team_id: uuid.UUID,
        parent: Optional[Scope],
        parent_scope_id: uuid.UUID,
    ) -> None:
        if parent is None or parent.team_id != team_id:
            raise InvalidParent(f"Parent scope {parent_scope_id} is not part of team {team_id}")
        if parent.is_private:
            raise InvalidParent("A private scope cannot have children")

    def find_private_scope(
        self,
        owner_id: uuid.UUID,
        coupled_scope_id: uuid.UUID,
    ) -> Optional[Scope]:
        return (
            self._db.query(Scope)
            .join(PrivateScopeLink, PrivateScopeLink.private_scope_id == Scope.id)
            .filter(
                PrivateScopeLink.owner_id == owner_id,
                PrivateScopeLink.coupled_scope_id == coupled_scope_id,
            )
            .first()
        )

    def _descendant_ids(self, scope_id: uuid.UUID) -> Set[uuid.UUID]:
        found: Set[uuid.UUID] = set()
        frontier = [scope_id]
        while frontier:
            rows = (
                self._db.query(Scope.id)
                .filter(Scope.parent_scope_id.in_(frontier))
                .all()
            )
            frontier = [row_id for (row_id,) in rows if row_id not in found]
            found.update(frontier)
        return found

    def _purge_scopes(self, scope_ids: List[uuid.UUID]) -> None:
        db = self._db

        db.query(FactKeyHead).filter(
            FactKeyHead.scope_id.in_(scope_ids)
        ).delete(synchronize_session=False)
        db.query(Fact).filter(Fact.scope_id.in_(scope_ids)).delete(synchronize_session=False)
        db.query(RememberPreviewRecord).filter(
            RememberPreviewRecord.scope_id.in_(scope_ids)
        ).delete(synchronize_session=False)

        question_ids = [
            q_id for (q_id,) in db.query(TeamQuestion.id)
            .filter(TeamQuestion.scope_id.in_(scope_ids))
            .all()
        ]
        objective_ids = [
            o_id for (o_id,) in db.query(LearningObjective.id)
            .filter(LearningObjective.scope_id.in_(scope_ids))
            .all()
        ]
        if question_ids:
            db.query(TeamQuestion).filter(
                TeamQuestion.parent_question_id.in_(question_ids),
                TeamQuestion.id.notin_(question_ids),
            ).update({TeamQuestion.parent_question_id: None}, synchronize_session=False)
            db.query(QuestionAssignee).filter(
                QuestionAssignee.question_id.in_(question_ids)
            ).delete(synchronize_session=False)
            db.query(TeamQuestion).filter(
                TeamQuestion.id.in_(question_ids)
            ).delete(synchronize_session=False)
        if objective_ids:
            db.query(TeamQuestion).filter(
                TeamQuestion.learning_objective_id.in_(objective_ids)
            ).update({TeamQuestion.learning_objective_id: None}, synchronize_session=False)
            db.query(LearningObjective).filter(
                LearningObjective.id.in_(objective_ids)
            ).delete(synchronize_session=False)

        db.query(PrivateScopeLink).filter(
            or_(
                PrivateScopeLink.private_scope_id.in_(scope_ids),
                PrivateScopeLink.coupled_scope_id.in_(scope_ids),
            )
        ).delete(synchronize_session=False)
        db.query(Scope).filter(Scope.id.in_(scope_ids)).delete(synchronize_session=False)
        db.expire_all()
