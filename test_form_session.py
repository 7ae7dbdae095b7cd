"""
Unit tests for form_session module.
"""

import asyncio
import time
from datetime import date
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from form_engine.attachment import LocalFile
from form_engine.custom_fields import TagListBehavior, date_order
from form_engine.exceptions import CatalogAPIError, DataLoadError, FieldDescriptorError
from form_engine.field_descriptor import FieldDescriptor, FieldKind
from form_engine.form_session import FormMode, FormSessionController, FormStatus, default_translate, snapshot

REMOTE_URL = "https://cdn.example.com/banners/summer.png"


def banner_fields(image_required=True):
    entries = [
        {'name': 'image', 'label': 'Banner Image', 'kind': 'image', 'required': image_required},
        {'name': 'altText', 'label': 'Alt Text', 'required': True, 'constraints': {'min_length': 2}},
        {'name': 'type', 'label': 'Type', 'kind': 'single-select', 'required': True, 'default': 'ADS',
         'options': {'ADS': 'Advertisement', 'BRAND': 'Brand', 'CATEGORY': 'Category', 'DISCOUNT': 'Discount'}},
        {'name': 'refId', 'label': 'Reference', 'kind': 'number',
         'depends_on': {'field': 'type', 'variants': {
             'BRAND': {'kind': 'paginated-select', 'label': 'Brand', 'reference': {'endpoint': '/brands'}},
             'CATEGORY': {'kind': 'paginated-select', 'label': 'Category', 'reference': {'endpoint': '/categories'}}
         }}},
        {'name': 'contactEmail', 'kind': 'email'},
        {'name': 'order', 'label': 'Order', 'kind': 'number', 'required': True, 'default': 1,
         'constraints': {'min_value': 0}},
        {'name': 'placements', 'kind': 'array', 'array': {
            'order_key': 'position',
            'max_items': 3,
            'fields': [
                {'name': 'position', 'kind': 'number', 'read_only': True},
                {'name': 'page', 'kind': 'single-select', 'required': True, 'default': 'HOME',
                 'options': {'HOME': 'Home', 'STORE': 'Store'}}
            ]
        }},
        {'name': 'createdAt', 'read_only': True}
    ]
    fields = [FieldDescriptor.model_validate(entry) for entry in entries]
    fields.append(FieldDescriptor(name='keywords', kind=FieldKind.CUSTOM, behavior=TagListBehavior()))
    return fields


def stored_banner(**overrides):
    record = {
        'id': 5,
        'image': REMOTE_URL,
        'altText': 'Summer sale',
        'type': 'ADS',
        'refId': None,
        'contactEmail': '',
        'order': 2,
        'placements': [{'position': 1, 'page': 'HOME'}],
        'createdAt': '2024-01-01',
        'keywords': ['summer']
    }
    record.update(overrides)
    return record


def png(name="banner.png"):
    return LocalFile(name=name, content_type="image/png", data=b"png")


class TestCreateMode:
    """Test class for create forms."""

    def setup_method(self):
        self.notify = MagicMock()
        self.on_create = AsyncMock(return_value={'id': 10})

    def make_session(self, **kwargs):
        options = {'on_create': self.on_create, 'notify': self.notify, 'status_display_seconds': 0}
        options.update(kwargs)
        return FormSessionController(banner_fields(), **options)

    def test_starts_ready_with_defaults(self):
        session = self.make_session()

        assert session.mode == FormMode.CREATE
        assert session.status == FormStatus.READY
        assert session.values['type'] == 'ADS'
        assert session.values['order'] == 1
        assert session.values['altText'] == ''
        assert session.values['placements'] == []
        assert session.values['keywords'] == []
        assert not session.is_dirty
        assert not session.can_submit

    def test_caller_defaults_override_declared(self):
        session = self.make_session(defaults={'type': 'DISCOUNT', 'unknown': 1})

        assert session.values['type'] == 'DISCOUNT'
        assert 'unknown' not in session.values

    @pytest.mark.asyncio
    async def test_required_empty_blocks_persistence(self):
        """An empty required field keeps the persistence call from running."""
        session = self.make_session()
        session.set_value('order', 3)

        result = await session.submit()

        assert result is False
        self.on_create.assert_not_awaited()
        assert session.field_errors['altText'] == 'Alt Text is required'
        assert session.field_errors['image'] == 'Banner Image is required'
        assert session.status == FormStatus.READY

    def test_email_validated_on_change(self):
        session = self.make_session()

        session.set_value('contactEmail', 'abc')
        assert session.field_errors['contactEmail'] == 'Invalid email address'

        session.set_value('contactEmail', 'ads@example.com')
        assert 'contactEmail' not in session.field_errors

    def test_blur_marks_touched(self):
        session = self.make_session()

        error = session.blur('altText')

        assert error == 'Alt Text is required'
        assert 'altText' in session.touched

    def test_unknown_field(self):
        session = self.make_session()

        with pytest.raises(FieldDescriptorError):
            session.set_value('missing', 1)

    @pytest.mark.asyncio
    async def test_successful_create(self):
        after_success = MagicMock()
        session = self.make_session(after_success=after_success)
        image = png()
        assert session.attachments['image'].choose(image)
        session.set_value('altText', 'Summer')
        session.set_value('keywords', ['summer', 'sale'])

        assert await session.submit() is True

        payload = self.on_create.await_args.args[0]
        assert payload['image'] is image
        assert payload['altText'] == 'Summer'
        assert payload['keywords'] == 'summer,sale'
        assert 'createdAt' not in payload
        after_success.assert_called_once_with({'id': 10})
        self.notify.success.assert_called_once_with('Created successfully')
        assert session.last_result == {'id': 10}

    @pytest.mark.asyncio
    async def test_before_submit_transforms_payload(self):
        session = self.make_session(before_submit=lambda payload: {**payload, 'lang': 'en'})
        session.attachments['image'].choose(png())
        session.set_value('altText', 'Summer')

        await session.submit()

        assert self.on_create.await_args.args[0]['lang'] == 'en'

    @pytest.mark.asyncio
    async def test_second_submit_while_submitting_is_ignored(self):
        release = asyncio.Event()

        async def slow_create(payload):
            await release.wait()
            return {'id': 11}

        session = self.make_session(on_create=slow_create)
        session.attachments['image'].choose(png())
        session.set_value('altText', 'Summer')

        first = asyncio.ensure_future(session.submit())
        await asyncio.sleep(0.01)

        assert session.status == FormStatus.SUBMITTING
        assert session.can_submit is False
        assert await session.submit() is False

        release.set()
        assert await first is True

    @pytest.mark.asyncio
    async def test_clean_form_is_not_submitted(self):
        session = self.make_session()

        assert await session.submit() is False
        self.on_create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failing_after_success_keeps_submit_result(self):
        """A page callback that raises does not turn a saved record into a failure."""
        after_success = MagicMock(side_effect=RuntimeError("navigate failed"))
        session = self.make_session(after_success=after_success)
        session.attachments['image'].choose(png())
        session.set_value('altText', 'Summer')

        assert await session.submit() is True

        after_success.assert_called_once_with({'id': 10})
        self.notify.success.assert_called_once_with('Created successfully')
        assert session.status == FormStatus.READY
        assert not session.is_dirty


class TestCrossValidation:
    """Test class for form level checks across several fields."""

    def setup_method(self):
        self.on_create = AsyncMock(return_value={'id': 3})
        self.fields = [
            FieldDescriptor.model_validate({'name': 'title', 'required': True}),
            FieldDescriptor.model_validate({'name': 'startDate', 'kind': 'date', 'required': True}),
            FieldDescriptor.model_validate({'name': 'endDate', 'kind': 'date', 'required': True})
        ]

    def make_session(self, cross_validate):
        return FormSessionController(
            self.fields, on_create=self.on_create, notify=MagicMock(),
            cross_validate=cross_validate, status_display_seconds=0
        )

    def fill(self, session, start, end):
        session.set_value('title', 'Summer')
        session.set_value('startDate', start)
        session.set_value('endDate', end)

    @pytest.mark.asyncio
    async def test_error_blocks_persistence(self):
        session = self.make_session(date_order('startDate', 'endDate'))
        self.fill(session, '2024-05-02', '2024-05-01')

        assert await session.submit() is False

        assert session.field_errors == {'endDate': 'End date must be after start date'}
        self.on_create.assert_not_awaited()
        assert session.status == FormStatus.READY

    @pytest.mark.asyncio
    async def test_valid_range_submits(self):
        session = self.make_session(date_order('startDate', 'endDate'))
        self.fill(session, '2024-05-01', '2024-05-01')

        assert await session.submit() is True
        self.on_create.assert_awaited_once()

    def test_receives_coerced_values(self):
        check = MagicMock(return_value={})
        session = self.make_session(check)
        self.fill(session, '2024-05-01', '2024-05-31')

        assert session.validate() is True

        values = check.call_args.args[0]
        assert values['startDate'] == date(2024, 5, 1)
        assert values['endDate'] == date(2024, 5, 31)

    def test_skipped_while_fields_are_invalid(self):
        check = MagicMock(return_value={'endDate': 'never shown'})
        session = self.make_session(check)
        session.set_value('startDate', '2024-05-02')

        assert session.validate() is False

        check.assert_not_called()
        assert 'endDate' in session.field_errors
        assert session.field_errors['endDate'] != 'never shown'


class TestDependentFields:
    """Test class for fields whose kind follows another field."""

    def setup_method(self):
        self.listener = MagicMock()
        self.session = FormSessionController(banner_fields(), status_display_seconds=0)
        self.session.add_field_listener(self.listener)

    def test_default_category_keeps_base_kind(self):
        assert self.session.descriptor('refId').kind == FieldKind.NUMBER

    def test_brand_to_category_swap_clears_reference(self):
        """Switching BRAND to CATEGORY drops the brand id and rewires the lookup."""
        self.session.set_value('type', 'BRAND')
        assert self.session.descriptor('refId').kind == FieldKind.PAGINATED_SELECT
        assert self.session.descriptor('refId').reference.endpoint == '/brands'

        self.session.set_value('refId', '7')
        self.session.set_value('type', 'CATEGORY')

        refid = self.session.descriptor('refId')
        assert self.session.values['refId'] is None
        assert refid.reference.endpoint == '/categories'
        assert refid.label == 'Category'
        assert self.listener.call_args.args == ('refId', refid)

    def test_same_category_keeps_value(self):
        self.session.set_value('type', 'BRAND')
        self.session.set_value('refId', '7')
        self.listener.reset_mock()

        self.session.set_value('type', 'BRAND')

        assert self.session.values['refId'] == '7'
        self.listener.assert_not_called()

    def test_back_to_default_restores_number(self):
        self.session.set_value('type', 'BRAND')
        self.session.set_value('type', 'ADS')

        assert self.session.descriptor('refId').kind == FieldKind.NUMBER
        assert self.session.values['refId'] is None

    def test_schema_follows_swap(self):
        self.session.set_value('type', 'BRAND')
        self.session.set_value('refId', 'not-a-number')

        assert 'refId' not in self.session.field_errors

        self.session.set_value('type', 'DISCOUNT')
        self.session.set_value('refId', 'not-a-number')

        assert self.session.field_errors['refId'] == 'Reference must be a number'


class TestUpdateMode:
    """Test class for update forms."""

    def setup_method(self):
        self.notify = MagicMock()
        self.fetch_data = AsyncMock(return_value=stored_banner())
        self.on_update = AsyncMock(return_value={'id': 5})

    def make_session(self, **kwargs):
        options = {
            'entity_id': 5,
            'fetch_data': self.fetch_data,
            'on_update': self.on_update,
            'notify': self.notify,
            'status_display_seconds': 0
        }
        options.update(kwargs)
        return FormSessionController(banner_fields(), **options)

    @pytest.mark.asyncio
    async def test_loading_then_ready(self):
        session = self.make_session()
        assert session.status == FormStatus.LOADING
        assert session.set_value('altText', 'x') is False

        await session.mount()

        self.fetch_data.assert_awaited_once_with(5)
        assert session.status == FormStatus.READY
        assert session.values['altText'] == 'Summer sale'
        assert session.original_values == session.values
        assert not session.is_dirty

    @pytest.mark.asyncio
    async def test_loaded_category_resolves_without_clearing(self):
        self.fetch_data.return_value = stored_banner(type='BRAND', refId=7)
        session = self.make_session()

        await session.mount()

        assert session.descriptor('refId').kind == FieldKind.PAGINATED_SELECT
        assert session.values['refId'] == 7

    @pytest.mark.asyncio
    async def test_missing_keys_get_defaults(self):
        record = stored_banner()
        del record['placements']
        self.fetch_data.return_value = record
        session = self.make_session()

        await session.mount()

        assert session.values['placements'] == []

    @pytest.mark.asyncio
    async def test_load_failure_then_retry(self):
        self.fetch_data.side_effect = [CatalogAPIError("Banner not found", 404), stored_banner()]
        session = self.make_session()

        await session.mount()

        assert session.status == FormStatus.DATA_ERROR
        assert isinstance(session.load_error, DataLoadError)
        assert session.load_error.message == "Banner not found"
        self.notify.error.assert_called_once_with('Failed to load data')
        assert session.set_value('altText', 'x') is False

        assert await session.retry_load() is True
        assert session.status == FormStatus.READY
        assert session.load_error is None

    @pytest.mark.asyncio
    async def test_missing_loader_is_a_load_error(self):
        session = self.make_session(fetch_data=None)

        await session.mount()

        assert session.status == FormStatus.DATA_ERROR
        assert session.load_error.message == "No data loader configured"

    @pytest.mark.asyncio
    async def test_reset_round_trip(self):
        """Edit then reset returns to the loaded values with no errors."""
        session = self.make_session()
        await session.mount()
        loaded = snapshot(session.values)

        session.set_value('altText', '')
        session.set_value('type', 'BRAND')
        session.append_item('placements')
        assert session.is_dirty
        assert session.dirty_fields == {'altText', 'type', 'placements'}
        assert session.can_reset
        assert session.field_errors

        session.reset()

        assert session.values == loaded
        assert session.field_errors == {}
        assert not session.is_dirty
        assert session.dirty_fields == set()
        assert session.descriptor('refId').kind == FieldKind.NUMBER

    @pytest.mark.asyncio
    async def test_untouched_attachment_left_out(self):
        session = self.make_session()
        await session.mount()
        session.set_value('altText', 'Winter sale')

        assert await session.submit() is True

        payload = self.on_update.await_args.args[1]
        assert 'image' not in payload
        assert payload['altText'] == 'Winter sale'

    @pytest.mark.asyncio
    async def test_attachment_states_in_payload(self):
        """New file replaces, removal sends None, untouched is omitted."""
        self.fetch_data.return_value = stored_banner()
        session = FormSessionController(
            banner_fields(image_required=False), entity_id=5, fetch_data=self.fetch_data,
            on_update=self.on_update, status_display_seconds=0
        )
        await session.mount()

        assert 'image' not in session.build_payload()

        session.attachments['image'].remove()
        assert session.build_payload()['image'] is None

        replacement = png("winter.png")
        session.attachments['image'].choose(replacement)
        assert session.build_payload()['image'] is replacement

        session.attachments['image'].restore()
        assert 'image' not in session.build_payload()

    @pytest.mark.asyncio
    async def test_update_failed_then_resubmit(self):
        """A failed update keeps the edits; the next submit succeeds."""
        after_error = MagicMock()
        self.on_update.side_effect = [CatalogAPIError("Update failed", 500), {'id': 5}]
        session = self.make_session(after_error=after_error, status_display_seconds=60)
        await session.mount()
        session.set_value('altText', 'Winter sale')

        assert await session.submit() is False

        assert session.status == FormStatus.ERROR
        assert session.submit_error == "Update failed"
        assert session.values['altText'] == 'Winter sale'
        self.notify.error.assert_called_once_with("Update failed")
        assert isinstance(after_error.call_args.args[0], CatalogAPIError)

        assert await session.submit() is True

        assert session.status == FormStatus.SUCCESS
        assert session.submit_error is None
        assert self.on_update.await_count == 2
        self.notify.success.assert_called_once_with('Updated successfully')
        session.close()

    @pytest.mark.asyncio
    async def test_failing_after_error_still_reports_failure(self):
        self.on_update.side_effect = CatalogAPIError("Update failed", 500)
        after_error = AsyncMock(side_effect=RuntimeError("page gone"))
        session = self.make_session(after_error=after_error)
        await session.mount()
        session.set_value('altText', 'Winter sale')

        assert await session.submit() is False

        after_error.assert_awaited_once()
        self.notify.error.assert_called_once_with("Update failed")
        assert session.status == FormStatus.READY
        assert session.values['altText'] == 'Winter sale'

    @pytest.mark.asyncio
    async def test_success_becomes_new_baseline(self):
        session = self.make_session(status_display_seconds=0.01)
        await session.mount()
        session.set_value('altText', 'Winter sale')

        await session.submit()
        assert session.status == FormStatus.SUCCESS

        await asyncio.sleep(0.05)

        assert session.status == FormStatus.READY
        assert session.original_values['altText'] == 'Winter sale'
        assert not session.is_dirty

    @pytest.mark.asyncio
    async def test_submitted_file_not_resent(self):
        session = self.make_session()
        await session.mount()
        session.attachments['image'].choose(png("winter.png"))

        await session.submit()

        assert session.status == FormStatus.READY
        assert 'image' not in session.build_payload()
        assert not session.is_dirty

    @pytest.mark.asyncio
    async def test_settle_if_due(self):
        session = self.make_session(status_display_seconds=60)
        await session.mount()
        session.set_value('altText', 'Winter sale')
        await session.submit()

        assert session.settle_if_due() is False
        assert session.status == FormStatus.SUCCESS

        with patch('form_engine.form_session.time.monotonic', return_value=time.monotonic() + 120):
            assert session.settle_if_due() is True

        assert session.status == FormStatus.READY
        session.close()

    @pytest.mark.asyncio
    async def test_next_edit_settles_error(self):
        self.on_update.side_effect = CatalogAPIError("Update failed", 500)
        session = self.make_session(status_display_seconds=60)
        await session.mount()
        session.set_value('altText', 'Winter sale')
        await session.submit()

        session.set_value('altText', 'Winter sales')

        assert session.status == FormStatus.READY
        assert session.submit_error is None
        session.close()

    @pytest.mark.asyncio
    async def test_cancel_closes_and_notifies_page(self):
        on_cancel = MagicMock()
        session = self.make_session(on_cancel=on_cancel)
        await session.mount()
        session.attachments['image'].choose(png())

        await session.cancel()

        on_cancel.assert_called_once_with()
        assert session.closed
        assert len(session.previews) == 0
        assert session.set_value('altText', 'x') is False

    @pytest.mark.asyncio
    async def test_custom_translation(self):
        translate = MagicMock(side_effect=lambda key, params=None: f"t:{key}")
        session = self.make_session(translate=translate)
        await session.mount()
        session.set_value('altText', 'Winter sale')

        await session.submit()

        self.notify.success.assert_called_once_with('t:form.updated')


class TestListFields:
    """Test class for list field editing through the session."""

    def setup_method(self):
        self.session = FormSessionController(banner_fields(), status_display_seconds=0)

    def test_append_reindexes(self):
        assert self.session.append_item('placements')
        assert self.session.append_item('placements', {'page': 'STORE'})

        assert self.session.values['placements'] == [
            {'position': 1, 'page': 'HOME'},
            {'position': 2, 'page': 'STORE'}
        ]

    def test_max_items(self):
        for _ in range(3):
            assert self.session.append_item('placements')

        assert self.session.append_item('placements') is False
        assert len(self.session.values['placements']) == 3

    def test_remove_and_move(self):
        self.session.append_item('placements', {'page': 'HOME'})
        self.session.append_item('placements', {'page': 'STORE'})
        self.session.append_item('placements', {'page': 'HOME'})

        self.session.move_item('placements', 1, 0)
        assert [item['page'] for item in self.session.values['placements']] == ['STORE', 'HOME', 'HOME']

        assert self.session.remove_item('placements', 0)
        assert self.session.values['placements'] == [
            {'page': 'HOME', 'position': 1},
            {'page': 'HOME', 'position': 2}
        ]

    def test_update_item_validates(self):
        self.session.append_item('placements')

        self.session.update_item('placements', 0, {'page': 'ARCHIVE'})

        assert self.session.field_errors['placements'].startswith('Item 1:')

    def test_list_value_replaced_not_mutated(self):
        self.session.append_item('placements')
        before = self.session.values['placements']

        self.session.append_item('placements')

        assert len(before) == 1

    def test_not_a_list_field(self):
        with pytest.raises(FieldDescriptorError):
            self.session.append_item('altText')


class TestHelpers:
    """Test class for module helpers."""

    def test_default_translate(self):
        assert default_translate('form.created') == 'Created successfully'
        assert default_translate('custom.key') == 'custom.key'

    def test_snapshot_copies_items(self):
        values = {'placements': [{'page': 'HOME'}], 'image': None}

        copied = snapshot(values)
        copied['placements'][0]['page'] = 'STORE'

        assert values['placements'][0]['page'] == 'HOME'
